from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from radar.api.router import api_router
from radar.core.config import get_settings
from radar.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from radar.services.runtime import build_runtime
from radar.services.store import StoreUnavailableError

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = build_runtime(settings)
    await runtime.initialize()
    app.state.runtime = runtime
    try:
        yield
    finally:
        await runtime.close()
        app.state.runtime = None
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
configure_logging()
_telemetry_runtime = setup_telemetry(settings, role="api")


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(_: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
