"""Media generation routes.

This module provides FastAPI routes over the session's orchestrator:
- POST /api/v1/generations - Admit a generation, run it in the background
- GET /api/v1/generations/current - Current task
- GET /api/v1/generations/{task_id} - One task
- POST /api/v1/generations/cancel - Cancel the in-flight generation
- POST /api/v1/generations/{task_id}/check - Re-check a timed-out generation
- GET /api/v1/breakers - Circuit breaker states
- GET /api/v1/notices - Recent user-facing notices

Pattern:
- Admit synchronously (fast, no network): 409 when busy, 400 when invalid
- Run the provider call as a background asyncio task
- Return 202 immediately with the pending task
"""

import asyncio
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from mediagen.exceptions import (
    GenerationInProgressError,
    InvalidGenerationRequestError,
    UnknownTaskError,
)
from mediagen.schemas.task import CancelResponse, GenerationRequest
from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.media_generation import MediaGenerationOrchestrator
from mediagen.services.notifications import RecordingNotifier

log = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["generations"])


def get_orchestrator(request: Request) -> MediaGenerationOrchestrator:
    """Resolve the session orchestrator (503 when the backend is not configured)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Media generation is not configured",
        )
    return orchestrator


def _track_job(request: Request, job: "asyncio.Task[Any]") -> None:
    jobs: set[asyncio.Task[Any]] | None = getattr(request.app.state, "generation_jobs", None)
    if jobs is None:
        jobs = set()
        request.app.state.generation_jobs = jobs
    jobs.add(job)
    job.add_done_callback(jobs.discard)


@router.post("/generations", status_code=status.HTTP_202_ACCEPTED)
async def start_generation(
    payload: GenerationRequest,
    request: Request,
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Admit a generation request and start it in the background.

    Returns:
        202 Accepted: Task admitted (status pending)
        400 Bad Request: Blank prompt or unsupported model/type
        409 Conflict: A generation is already in flight
        503 Service Unavailable: Backend not configured
    """
    try:
        task = orchestrator.begin_generation(
            payload.prompt,
            payload.type,
            payload.model,
            params=payload.params,
            reference_url=payload.reference_url,
        )
    except GenerationInProgressError as e:
        log.warning("generation_conflict", active_task_id=e.task_id)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except InvalidGenerationRequestError as e:
        log.warning("generation_invalid", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    job = asyncio.create_task(orchestrator.run_generation(task.task_id))
    _track_job(request, job)

    log.info("generation_accepted", task_id=task.task_id, model=payload.model)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "accepted", "task": task.model_dump(mode="json")},
    )


@router.get("/generations/current")
async def get_current_generation(
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Return the current task and the in-flight flag (404 when none)."""
    task = orchestrator.current_task
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No current task")
    return JSONResponse(
        content={
            "is_generating": orchestrator.is_generating,
            "task": task.model_dump(mode="json"),
        }
    )


@router.post("/generations/cancel")
async def cancel_generation(
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    """Cancel the in-flight generation (local cancel for most vendors)."""
    task_id = orchestrator.active_task_id
    canceled = await orchestrator.cancel_generation()
    return CancelResponse(canceled=canceled, task_id=task_id if canceled else None)


@router.post("/generations/{task_id}/check")
async def check_timed_out_generation(
    task_id: str,
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Ask the provider once more about a generation whose polling timed out.

    Returns:
        200 OK: Check done; ``recovered`` is true when the media is ready
        404 Not Found: No timed-out task with this id
    """
    try:
        media_url = await orchestrator.check_timed_out_task(task_id)
    except UnknownTaskError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No timed-out task with this id"
        ) from e

    task = orchestrator.store.get_task(task_id)
    log.info("timed_out_generation_checked", task_id=task_id, recovered=media_url is not None)
    return JSONResponse(
        content={
            "recovered": media_url is not None,
            "task": task.model_dump(mode="json") if task is not None else None,
        }
    )


@router.get("/generations/{task_id}")
async def get_generation(
    task_id: str,
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Return one task by id (404 when unknown)."""
    task = orchestrator.store.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return JSONResponse(content=task.model_dump(mode="json"))


@router.get("/breakers")
async def list_breakers(
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Return a snapshot of every circuit breaker created this session."""
    registry: BreakerRegistry = orchestrator.breakers
    return JSONResponse(content={"breakers": registry.snapshots()})


@router.get("/notices")
async def list_notices(
    orchestrator: MediaGenerationOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Return recent user-facing notices (empty when the notifier keeps none)."""
    notifier = orchestrator.notifier
    notices = list(notifier.notices) if isinstance(notifier, RecordingNotifier) else []
    return JSONResponse(
        content={
            "notices": [
                {
                    "level": notice.level.value,
                    "message": notice.message,
                    "description": notice.description,
                }
                for notice in notices
            ]
        }
    )
