from fastapi import APIRouter, Depends

from app.api.deps import get_gateway
from app.schemas import HealthResponse
from app.services.gateway import ImageGateway

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(gateway: ImageGateway = Depends(get_gateway)) -> HealthResponse:
    connected = await gateway.storage_connected()
    return HealthResponse(status="OK", s3="connected" if connected else "disconnected")
