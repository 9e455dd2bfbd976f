"""Per-task resource tracking and lifecycle telemetry.

TaskCleanup owns the resources an orchestrator session allocates per task:
one cancellation handle and, for polled providers, one polling task. It
records start/complete/fail/cancel telemetry with elapsed durations and
releases the resources when a task ends.

On teardown every outstanding handle is cancelled (best-effort, errors are
logged) with a ``generation_canceled`` event tagged "session closed", and
every polling task is cancelled. No timer or pending wait survives the
session that created it.

Cancellation is cooperative: a handle tells the waiting coroutine to stop
waiting. It does not stop work already running at the provider.
"""

import asyncio
import time
from typing import Any

from mediagen.schemas.task import MediaType
from mediagen.schemas.telemetry import TelemetryEventType
from mediagen.services.telemetry import MediaTelemetryService
from mediagen.utils.logging import get_logger

log = get_logger(__name__)

TEARDOWN_REASON = "session closed"
USER_CANCEL_REASON = "Canceled by user"


class CancellationHandle:
    """Cooperative cancellation signal for one task.

    Example:
        >>> handle = CancellationHandle("task-1")
        >>> handle.cancel("Canceled by user")
        >>> handle.cancelled
        True
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.reason: str | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Signal cancellation. Repeated calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        """Block until cancelled; returns the reason."""
        await self._event.wait()
        return self.reason


class _TrackedTask:
    __slots__ = ("media_type", "model_id", "started_at")

    def __init__(self, media_type: MediaType, model_id: str | None, started_at: float):
        self.media_type = media_type
        self.model_id = model_id
        self.started_at = started_at


class TaskCleanup:
    """Resource and telemetry bookkeeping for one orchestrator session.

    Attributes:
        telemetry: Telemetry service receiving lifecycle events.
        user_id: Acting user attached to events (subject to anonymous tracking).

    Usage:
        async with TaskCleanup(telemetry) as cleanup:
            handle = await cleanup.register_task(task_id, MediaType.IMAGE, "ideogram-v2")
            ...
            await cleanup.complete_task(task_id, media_url=url)
    """

    def __init__(self, telemetry: MediaTelemetryService, user_id: str | None = None):
        self.telemetry = telemetry
        self.user_id = user_id
        self._handles: dict[str, CancellationHandle] = {}
        self._pollers: dict[str, asyncio.Task[Any]] = {}
        self._tracked: dict[str, _TrackedTask] = {}

    @property
    def outstanding_task_ids(self) -> list[str]:
        """Ids of tasks that still hold a cancellation handle."""
        return list(self._handles)

    @property
    def poller_count(self) -> int:
        return len(self._pollers)

    def get_handle(self, task_id: str) -> CancellationHandle | None:
        return self._handles.get(task_id)

    async def register_task(
        self,
        task_id: str,
        media_type: MediaType,
        model_id: str | None = None,
    ) -> CancellationHandle:
        """Allocate a cancellation handle and record generation_started.

        Args:
            task_id: Task being started.
            media_type: Media type (for telemetry).
            model_id: Model id (for telemetry).

        Returns:
            The task's cancellation handle.
        """
        handle = CancellationHandle(task_id)
        self._handles[task_id] = handle
        self._tracked[task_id] = _TrackedTask(media_type, model_id, time.monotonic())

        log.info("task_started", task_id=task_id, media_type=media_type.value, model_id=model_id)
        await self.telemetry.log_generation(
            TelemetryEventType.GENERATION_STARTED,
            media_type,
            model_id,
            task_id,
            user_id=self.user_id,
        )
        return handle

    def register_poller(self, task_id: str, poller: asyncio.Task[Any]) -> None:
        """Hold the polling task for ``task_id`` so it can be cancelled later."""
        previous = self._pollers.get(task_id)
        if previous is not None and previous is not poller and not previous.done():
            previous.cancel()
        self._pollers[task_id] = poller

    async def complete_task(self, task_id: str, media_url: str | None = None) -> None:
        """Record generation_completed and release the task's resources."""
        await self._finish(
            task_id,
            TelemetryEventType.GENERATION_COMPLETED,
            {"media_url": media_url} if media_url else {},
        )

    async def fail_task(self, task_id: str, error: str | None = None) -> None:
        """Record generation_failed and release the task's resources."""
        await self._finish(
            task_id,
            TelemetryEventType.GENERATION_FAILED,
            {"error": error} if error else {},
        )

    async def cancel_task(self, task_id: str, reason: str = USER_CANCEL_REASON) -> bool:
        """Fire the task's handle, cancel its poller and record generation_canceled.

        Returns:
            True if the task was being tracked.
        """
        handle = self._handles.get(task_id)
        if handle is None:
            self._release_poller(task_id)
            return False

        self._signal(handle, reason)
        await self._finish(task_id, TelemetryEventType.GENERATION_CANCELED, {"reason": reason})
        return True

    async def teardown(self) -> None:
        """Cancel every outstanding task and clear every poller."""
        outstanding = list(self._handles)
        if outstanding or self._pollers:
            log.info(
                "task_cleanup_teardown",
                outstanding_tasks=len(outstanding),
                pollers=len(self._pollers),
            )

        for task_id in outstanding:
            handle = self._handles.get(task_id)
            if handle is not None:
                self._signal(handle, TEARDOWN_REASON)
            await self._finish(
                task_id,
                TelemetryEventType.GENERATION_CANCELED,
                {"reason": TEARDOWN_REASON},
            )

        for task_id in list(self._pollers):
            self._release_poller(task_id)

    async def __aenter__(self) -> "TaskCleanup":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    def _signal(self, handle: CancellationHandle, reason: str) -> None:
        try:
            handle.cancel(reason)
        except Exception as e:
            log.error("task_cancel_failed", task_id=handle.task_id, error=str(e))

    def _release_poller(self, task_id: str) -> None:
        poller = self._pollers.pop(task_id, None)
        if poller is not None and not poller.done():
            poller.cancel()

    async def _finish(
        self,
        task_id: str,
        event_type: TelemetryEventType,
        details: dict[str, Any],
    ) -> None:
        tracked = self._tracked.pop(task_id, None)
        self._handles.pop(task_id, None)
        self._release_poller(task_id)

        if tracked is None:
            log.debug("task_not_tracked", task_id=task_id, event_type=event_type.value)
            return

        duration_ms = (time.monotonic() - tracked.started_at) * 1000
        log.info(
            "task_finished",
            task_id=task_id,
            event_type=event_type.value,
            duration_ms=round(duration_ms, 1),
        )
        try:
            await self.telemetry.log_generation(
                event_type,
                tracked.media_type,
                tracked.model_id,
                task_id,
                details=details,
                duration_ms=duration_ms,
                user_id=self.user_id,
            )
        except Exception as e:
            # Telemetry must never break cleanup
            log.error("task_telemetry_failed", task_id=task_id, error=str(e))
