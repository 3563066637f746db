from app.schemas.health import HealthResponse

__all__ = [
    "HealthResponse",
]
