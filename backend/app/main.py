from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from app.api.routers import health as health_router
from app.api.routers import images as images_router
from app.core.config import get_settings
from app.core.logging import configure_logging
from app.services.gateway import GatewayError, create_gateway
from app.tasks.runner import BackgroundRunner


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    runner = BackgroundRunner(settings.max_parallel_cache_writes)
    app.state.background_runner = runner
    app.state.image_gateway = create_gateway(settings, runner)

    await runner.start()
    yield
    await runner.stop()


async def gateway_error_handler(request: Request, exc: GatewayError) -> PlainTextResponse:
    return PlainTextResponse(exc.message, status_code=exc.status_code)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(
        debug=settings.debug,
        title="Image Gateway",
        lifespan=lifespan,
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)

    app.include_router(images_router.router)
    app.include_router(health_router.router)

    return app


app = create_app()
