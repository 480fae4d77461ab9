from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from podping_ingest.api.router import api_router
from podping_ingest.core.config import get_settings
from podping_ingest.core.telemetry import configure_logging, setup_telemetry
from podping_ingest.services.repository import get_repository

logger = logging.getLogger(__name__)
settings = get_settings()
configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        app.state.telemetry.shutdown()
        # the pool is bound to the server loop; drop it with the loop
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.telemetry = setup_telemetry(settings, component="api", app=app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)


def run() -> None:
    import uvicorn

    uvicorn.run("podping_ingest.main:app", host="0.0.0.0", port=8000, log_config=None)
