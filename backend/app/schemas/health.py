from typing import Literal

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: Literal["OK"] = "OK"
    s3: Literal["connected", "disconnected"]
