from fastapi import APIRouter, Depends, Response
from fastapi.responses import StreamingResponse

from app.api.deps import get_gateway, get_request_identity
from app.services.cache import RequestIdentity
from app.services.gateway import ImageGateway

router = APIRouter(prefix="/images", tags=["images"])


@router.get("/{filename:path}", name="get_image")
async def get_image(
    filename: str,
    gateway: ImageGateway = Depends(get_gateway),
    identity: RequestIdentity = Depends(get_request_identity),
) -> Response:
    result = await gateway.fetch(filename, identity)
    if result.stream is not None:
        return StreamingResponse(
            result.stream,
            status_code=result.status_code,
            headers=result.headers,
        )
    return Response(
        content=result.body or b"",
        status_code=result.status_code,
        headers=result.headers,
    )
