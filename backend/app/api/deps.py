from fastapi import Request

from app.services.cache import RequestIdentity
from app.services.gateway import ImageGateway


def get_gateway(request: Request) -> ImageGateway:
    return request.app.state.image_gateway


def get_request_identity(request: Request) -> RequestIdentity:
    gateway = get_gateway(request)
    return gateway.identity_for(request.method, str(request.url), request.headers)
