from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from starlette.requests import Request

from curator.api.router import api_router
from curator.core.config import Settings, get_settings
from curator.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from curator.services.repository import get_repository

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        runtime = app.state.telemetry
        if runtime.enabled:
            FastAPIInstrumentor.uninstrument_app(app)
        shutdown_telemetry(runtime)
        if get_repository.cache_info().currsize:
            await get_repository().close()
            get_repository.cache_clear()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.telemetry = setup_telemetry(settings, service_suffix="api")
    if app.state.telemetry.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=app.state.telemetry.provider)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        started_at = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "http request id=%s method=%s path=%s status=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started_at) * 1000.0,
        )
        return response

    app.include_router(api_router)
    return app


app = create_app()
