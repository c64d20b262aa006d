"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from hlsingest.core.config import settings
from hlsingest.core.database import check_database, engine
from hlsingest.core.logging import setup_logging
from hlsingest.core.metrics import get_content_type, get_metrics, set_app_info
from hlsingest.core.middleware import MetricsMiddleware, RequestContextMiddleware, TracingMiddleware
from hlsingest.core.storage import StorageService
from hlsingest.core.tracing import setup_tracing, shutdown_tracing
from hlsingest.modules.ingest.config import PipelineConfig
from hlsingest.modules.ingest.ffmpeg import TranscodeDriver
from hlsingest.modules.ingest.router import router as ingest_router
from hlsingest.modules.ingest.schemas import ComponentHealth, HealthResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()
    shutdown_tracing()


app = FastAPI(
    lifespan=lifespan,
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## HLS Ingest API

Accepts source videos, transcodes them into an adaptive-bitrate HLS ladder
and publishes a master manifest once every listed rendition is stored.

### Asset lifecycle

`QUEUED -> PROBING -> PLANNED -> TRANSCODING -> PUBLISHING -> READY`,
with `FAILED` and `CANCELLED` as the other terminal states.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check and metrics endpoints",
        },
        {
            "name": "assets",
            "description": "Asset ingestion - submit, status, cancel, delete, retry",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs first: metrics wrap the span, the span wraps the request context
app.add_middleware(RequestContextMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"], response_model=HealthResponse)
async def health_check(response: Response) -> HealthResponse:
    """Health of the state store, object store and encoder.

    Responds 503 when any component is unhealthy.
    """
    storage = StorageService(timeout=5.0)
    driver = TranscodeDriver(PipelineConfig.from_settings())

    try:
        storage_ok = await storage.ping()
    except (asyncio.TimeoutError, OSError):
        storage_ok = False

    components = [
        ComponentHealth(name="database", healthy=await check_database()),
        ComponentHealth(name="storage", healthy=storage_ok, detail=settings.STORAGE_BACKEND),
        ComponentHealth(name="encoder", healthy=await driver.check_available(), detail=settings.FFMPEG_PATH),
    ]
    healthy = all(c.healthy for c in components)
    if not healthy:
        response.status_code = 503
    return HealthResponse(status="healthy" if healthy else "unhealthy", components=components)


@app.get("/metrics", tags=["health"], include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(ingest_router, prefix=settings.API_V1_PREFIX)
