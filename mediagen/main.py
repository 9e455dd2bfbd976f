"""FastAPI application for media generation orchestration.

This is the web service entry point. The application lifespan is the
orchestrator session: startup builds the edge function client, breaker
registry, telemetry and orchestrator; shutdown tears the session down so no
task handle, poller or HTTP connection outlives it.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

from mediagen.clients.edge_functions import EdgeFunctionClient
from mediagen.config import (
    get_breaker_failure_threshold,
    get_breaker_reset_timeout_ms,
    get_edge_function_rate,
    get_generation_timeout_seconds,
    get_poll_interval_seconds,
    get_supabase_key,
    get_supabase_url,
    get_telemetry_anonymous,
    get_telemetry_enabled,
    get_telemetry_error_reporting,
    get_telemetry_performance_metrics,
    get_telemetry_sink_kind,
    is_backend_configured,
)
from mediagen.routes import generations
from mediagen.schemas.telemetry import TelemetryOptions
from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.media_generation import GenerationOptions, MediaGenerationOrchestrator
from mediagen.services.notifications import RecordingNotifier
from mediagen.services.providers import EdgeFunctionAdapter
from mediagen.services.task_cleanup import TaskCleanup
from mediagen.services.telemetry import (
    LoggingTelemetrySink,
    MediaTelemetryService,
    RestTelemetrySink,
    TelemetrySink,
)

log = structlog.get_logger()

SERVICE_NAME = "mediagen"
SERVICE_VERSION = "0.1.0"


def build_telemetry_sink(base_url: str, api_key: str) -> TelemetrySink:
    """Select the telemetry sink from TELEMETRY_SINK."""
    if get_telemetry_sink_kind() == "rest":
        return RestTelemetrySink(base_url, api_key)
    return LoggingTelemetrySink()


def build_orchestrator(
    client: EdgeFunctionClient, sink: TelemetrySink
) -> MediaGenerationOrchestrator:
    """Wire an orchestrator session from environment configuration."""
    telemetry = MediaTelemetryService(
        sink,
        TelemetryOptions(
            enabled=get_telemetry_enabled(),
            anonymous_tracking=get_telemetry_anonymous(),
            performance_metrics=get_telemetry_performance_metrics(),
            error_reporting=get_telemetry_error_reporting(),
        ),
    )
    return MediaGenerationOrchestrator(
        EdgeFunctionAdapter(client),
        cleanup=TaskCleanup(telemetry),
        breakers=BreakerRegistry(
            failure_threshold=get_breaker_failure_threshold(),
            reset_timeout_ms=get_breaker_reset_timeout_ms(),
        ),
        notifier=RecordingNotifier(),
        options=GenerationOptions(
            poll_interval_seconds=get_poll_interval_seconds(),
            timeout_seconds=get_generation_timeout_seconds(),
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage the orchestrator session.

    Startup:
    - Build EdgeFunctionClient and orchestrator if SUPABASE_URL/KEY are set

    Shutdown:
    - Tear down the orchestrator (cancel handles, pollers)
    - Cancel remaining background generation jobs
    - Close HTTP connections
    """
    # Startup
    client = None
    sink: TelemetrySink | None = None
    app.state.orchestrator = None
    app.state.generation_jobs = set()

    if is_backend_configured():
        base_url = get_supabase_url()
        api_key = get_supabase_key()
        client = EdgeFunctionClient(base_url, api_key, max_rate=get_edge_function_rate())
        sink = build_telemetry_sink(base_url, api_key)
        app.state.orchestrator = build_orchestrator(client, sink)
        log.info("media_generation_ready", backend=base_url)
    else:
        log.warning(
            "media_generation_disabled",
            message="SUPABASE_URL or SUPABASE_ANON_KEY not set, generation endpoints return 503",
        )

    yield  # Application runs here

    # Shutdown
    orchestrator = app.state.orchestrator
    if orchestrator is not None:
        log.info("shutting_down_media_generation")
        await orchestrator.aclose()

    jobs: set[asyncio.Task[Any]] = app.state.generation_jobs
    for job in list(jobs):
        job.cancel()
    if jobs:
        await asyncio.gather(*jobs, return_exceptions=True)

    if client is not None:
        await client.close()
    if isinstance(sink, RestTelemetrySink):
        await sink.close()


# Create FastAPI app with lifespan
app = FastAPI(
    title="mediagen - Media Generation Orchestration",
    description=(
        "Task lifecycle, progress and circuit breaking for image, video and audio generation"
    ),
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.include_router(generations.router)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """Health check endpoint.

    Returns:
        JSONResponse: Status and whether generation is configured
    """
    return JSONResponse(
        content={
            "status": "healthy",
            "service": SERVICE_NAME,
            "generation_enabled": getattr(app.state, "orchestrator", None) is not None,
        }
    )


@app.get("/", status_code=status.HTTP_200_OK)
async def root() -> JSONResponse:
    """Root endpoint with API information.

    Returns:
        JSONResponse: API metadata
    """
    return JSONResponse(
        content={
            "service": "mediagen - Media Generation Orchestration",
            "version": SERVICE_VERSION,
            "docs": "/docs",
            "health": "/health",
            "generations": "/api/v1/generations",
        }
    )


if __name__ == "__main__":
    import uvicorn

    # Binding to 0.0.0.0 is intentional for container deployments
    uvicorn.run(
        "mediagen.main:app",
        host="0.0.0.0",  # noqa: S104
        port=8000,
        reload=True,
    )
