"""Media Generation Orchestrator.

This module implements the user-facing generation operation. It admits at
most one generation per orchestrator instance, routes the request to the
provider adapter through a per-service circuit breaker, tracks the task in
the TaskStateStore and reports progress, completion and failure through
callbacks and notices.

Key Responsibilities:
- Reject concurrent generations and invalid requests before any network call
- Drive the task through pending → processing → completed | failed | canceled
- Poll asynchronous providers (Midjourney, Kling, Suno) and smooth progress
- Convert every provider/network error into task state + callbacks + notice
- Cooperative cancellation; upstream cancel only where the vendor has one
- Leave timed-out polled tasks open so a late result can still be recovered

Architecture Pattern:
    Orchestrator (Smart): admission, routing, state, progress, notices
    Provider adapter (Dumb): one call per edge function, normalized response

Known limitation:
    cancel_generation() stops waiting for the result. For providers without a
    cancel endpoint (Ideogram, Suno) the upstream job keeps running and may
    still be billed.

Usage:
    orchestrator = MediaGenerationOrchestrator(EdgeFunctionAdapter(client))
    url = await orchestrator.generate_media("a red cube", "image", "ideogram-v2")
    await orchestrator.aclose()
"""

import asyncio
import math
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from mediagen.clients.edge_functions import EdgeFunctionError
from mediagen.config import DEFAULT_GENERATION_TIMEOUT_SECONDS, DEFAULT_POLL_INTERVAL_SECONDS
from mediagen.constants import (
    MODEL_ROUTES,
    TASK_CANCEL_FUNCTION,
    TASK_STATUS_FUNCTION,
    ModelRoute,
    normalize_provider_status,
)
from mediagen.exceptions import (
    CircuitOpenError,
    GenerationInProgressError,
    InvalidGenerationRequestError,
    ProviderError,
    UnknownTaskError,
)
from mediagen.schemas.task import GenerationTaskBase, MediaType, TaskStatus, TaskUpdate, new_task
from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.notifications import LoggingNotifier, Notice, NoticeLevel, Notifier
from mediagen.services.progress import PROCESSING_CEILING, estimate_progress
from mediagen.services.providers import (
    ProviderAdapter,
    ProviderResponse,
    extract_media_url,
    extract_percentage,
    extract_provider_task_id,
)
from mediagen.services.task_cleanup import USER_CANCEL_REASON, CancellationHandle, TaskCleanup
from mediagen.services.task_state import TaskStateStore
from mediagen.services.telemetry import LoggingTelemetrySink, MediaTelemetryService
from mediagen.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")


def _is_transient(exception: BaseException) -> bool:
    """Status checks are retried on network errors, rate limits and 5xx."""
    if isinstance(exception, EdgeFunctionError):
        return exception.is_retriable
    return isinstance(exception, httpx.TransportError)


class _GenerationCanceled(Exception):
    """Internal signal: the task's cancellation handle fired."""


class _GenerationTimedOut(ProviderError):
    """Internal signal: polling outlived timeout_seconds. The upstream task may still finish."""


@dataclass
class GenerationOptions:
    """Caller-supplied behavior for one orchestrator.

    Attributes:
        show_notices: Send user-facing notices through the notifier.
        on_progress: Called with the displayed progress (0-100).
        on_complete: Called with the media URL on success.
        on_error: Called with the error message on failure.
        poll_interval_seconds: Delay between status checks (polled providers).
        timeout_seconds: Upper bound for polling. When it elapses the caller
            stops waiting, on_error receives the timeout message and the task
            stays open for check_timed_out_task().
    """

    show_notices: bool = True
    on_progress: Callable[[int], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[str], None] | None = None
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    timeout_seconds: float = DEFAULT_GENERATION_TIMEOUT_SECONDS


@dataclass
class _AdmittedRequest:
    route: ModelRoute
    payload: dict[str, Any] = field(default_factory=dict)


class MediaGenerationOrchestrator:
    """Runs media generations for one session, one at a time.

    Attributes:
        adapter: Provider adapter used for every upstream call.
        store: Task state for this session.
        cleanup: Per-task handles, pollers and lifecycle telemetry.
        breakers: Circuit breakers keyed by edge function name.
        notifier: Receiver of user-facing notices.
        options: Callbacks, notices and polling settings.

    Example:
        >>> orchestrator = MediaGenerationOrchestrator(adapter)
        >>> url = await orchestrator.generate_media("a red cube", "image", "ideogram-v2")
        >>> orchestrator.current_task.status
        <TaskStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        *,
        store: TaskStateStore | None = None,
        cleanup: TaskCleanup | None = None,
        breakers: BreakerRegistry | None = None,
        notifier: Notifier | None = None,
        options: GenerationOptions | None = None,
        routes: Mapping[str, ModelRoute] = MODEL_ROUTES,
    ):
        self.adapter = adapter
        # Store and registry define __len__; an empty one is falsy
        self.store = store if store is not None else TaskStateStore()
        self.cleanup = (
            cleanup
            if cleanup is not None
            else TaskCleanup(MediaTelemetryService(LoggingTelemetrySink()))
        )
        self.breakers = breakers if breakers is not None else BreakerRegistry()
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.options = options if options is not None else GenerationOptions()
        self.routes = routes

        self._is_generating = False
        self._active_task_id: str | None = None
        self._requests: dict[str, _AdmittedRequest] = {}
        self._timed_out: set[str] = set()

    @property
    def is_generating(self) -> bool:
        return self._is_generating

    @property
    def active_task_id(self) -> str | None:
        """Id of the in-flight task, None when idle."""
        return self._active_task_id

    @property
    def current_task(self) -> GenerationTaskBase | None:
        return self.store.current_task

    @property
    def timed_out_task_ids(self) -> frozenset[str]:
        """Tasks whose polling window elapsed and that can still be checked."""
        return frozenset(self._timed_out)

    def begin_generation(
        self,
        prompt: str,
        media_type: MediaType | str,
        model_id: str,
        params: dict[str, Any] | None = None,
        reference_url: str | None = None,
    ) -> GenerationTaskBase:
        """Admit a generation request and register its task as pending.

        Synchronous so admission is atomic on the event loop: the in-flight
        flag is set before any other coroutine can run.

        Args:
            prompt: Generation prompt (must not be blank).
            media_type: "image", "video" or "audio".
            model_id: Model id from MODEL_ROUTES.
            params: Provider parameters forwarded to the edge function.
            reference_url: Optional reference image URL.

        Returns:
            The registered task (status pending, progress 0).

        Raises:
            GenerationInProgressError: If a generation is already in flight.
            InvalidGenerationRequestError: For blank prompts or unsupported
                model/media type combinations.
        """
        if self._is_generating:
            raise GenerationInProgressError(self._active_task_id)

        if not prompt or not prompt.strip():
            raise InvalidGenerationRequestError("Prompt must not be empty")

        try:
            media_type = MediaType(media_type)
        except ValueError as e:
            raise InvalidGenerationRequestError(f"Unsupported media type: {media_type}") from e

        route = self.routes.get(model_id)
        if route is None or route.media_type != media_type:
            raise InvalidGenerationRequestError(
                f"Unsupported media type or model: {media_type.value} / {model_id}"
            )

        params = dict(params or {})
        prompt = prompt.strip()
        task_id = str(uuid.uuid4())

        details = self._task_details(media_type, params, reference_url)
        try:
            task = new_task(task_id, media_type, prompt, model_id, **details)
        except ValidationError as e:
            raise InvalidGenerationRequestError(f"Invalid generation parameters: {e}") from e

        payload: dict[str, Any] = {**params, "prompt": prompt, "model": model_id}
        if reference_url:
            payload["referenceUrl"] = reference_url

        self.store.register_task(task_id, task)
        self._requests[task_id] = _AdmittedRequest(route=route, payload=payload)
        self._is_generating = True
        self._active_task_id = task_id

        log.info(
            "generation_admitted",
            task_id=task_id,
            media_type=media_type.value,
            model_id=model_id,
            function_name=route.function_name,
        )
        return task

    async def run_generation(self, task_id: str) -> str | None:
        """Drive an admitted task to a terminal state.

        Never raises for provider, network or circuit errors: they become a
        failed task, an on_error callback and an error notice.

        Args:
            task_id: Id returned by begin_generation().

        Returns:
            Media URL on success, None on failure or cancellation.
        """
        request = self._requests.pop(task_id, None)
        task = self.store.get_task(task_id)
        if request is None or task is None:
            log.warning("generation_not_admitted", task_id=task_id)
            return None
        if not self._owns(task_id):
            # Canceled between admission and start
            return None

        media_type = MediaType(task.type)
        handle = await self.cleanup.register_task(task_id, media_type, task.model)
        if not self._owns(task_id):
            return None

        self._notify(NoticeLevel.INFO, f"{media_type.value.capitalize()} generation started")
        self._emit_progress(0)
        self.store.update_task(task_id, TaskUpdate(status=TaskStatus.PROCESSING))

        try:
            media_url = await self._await_or_cancel(self._produce(task_id, request), handle)
        except _GenerationCanceled as e:
            log.info("generation_stopped_waiting", task_id=task_id, reason=str(e))
            return None
        except _GenerationTimedOut as e:
            await self._time_out(task_id, media_type, e)
            return None
        except Exception as e:
            await self._fail(task_id, media_type, e)
            return None

        return await self._complete(task_id, media_type, media_url)

    async def generate_media(
        self,
        prompt: str,
        media_type: MediaType | str,
        model_id: str,
        params: dict[str, Any] | None = None,
        reference_url: str | None = None,
    ) -> str | None:
        """Generate one media item and wait for the result.

        Admission errors (generation already running, invalid request) are
        surfaced as an error notice; no task is created and any in-flight
        task is left untouched.

        Returns:
            Media URL on success, None otherwise.
        """
        try:
            task = self.begin_generation(prompt, media_type, model_id, params, reference_url)
        except GenerationInProgressError as e:
            log.warning("generation_rejected_in_progress", active_task_id=e.task_id)
            self._notify(NoticeLevel.ERROR, str(e))
            return None
        except InvalidGenerationRequestError as e:
            log.warning("generation_rejected_invalid", error=str(e), model_id=model_id)
            self._notify(NoticeLevel.ERROR, "Invalid generation request", str(e))
            return None

        return await self.run_generation(task.task_id)

    async def cancel_generation(self) -> bool:
        """Cancel the in-flight generation.

        Marks the task canceled and clears the in-flight flag before the
        first await, then releases the task's resources. Vendors with a
        cancel endpoint get a best-effort upstream cancel; otherwise the
        upstream job keeps running.

        Returns:
            True if a generation was canceled, False if none was running.
        """
        task_id = self._active_task_id
        if not self._is_generating or task_id is None:
            return False

        task = self.store.get_task(task_id)
        self._release_active(task_id)
        self._requests.pop(task_id, None)
        if task is not None and not task.status.is_terminal:
            self.store.update_task(task_id, TaskUpdate(status=TaskStatus.CANCELED))

        await self.cleanup.cancel_task(task_id, USER_CANCEL_REASON)
        log.info("generation_canceled", task_id=task_id)

        if task is not None:
            route = self.routes.get(task.model)
            if route is not None and route.cancellable and task.provider_task_id:
                await self._cancel_upstream(task_id, task.provider_task_id)

        self._notify(NoticeLevel.INFO, "Generation canceled")
        return True

    async def check_timed_out_task(self, task_id: str) -> str | None:
        """Check a timed-out task's upstream status once more.

        A task whose polling window elapsed stays processing with its
        provider task id. This issues one status check and settles the task
        if the provider has finished since: completed tasks get their media
        URL (on_complete + success notice), failed or canceled ones are
        marked failed (on_error + error notice). A task still running upstream
        gets a progress refresh and stays checkable.

        Args:
            task_id: Id of a task in timed_out_task_ids.

        Returns:
            Media URL if the task completed upstream, None otherwise.

        Raises:
            UnknownTaskError: If ``task_id`` is not a timed-out task.
        """
        task = self.store.get_task(task_id)
        if task is None or task_id not in self._timed_out or not task.provider_task_id:
            raise UnknownTaskError(task_id)

        media_type = MediaType(task.type)
        check_log = log.bind(task_id=task_id, provider_task_id=task.provider_task_id)
        sequence = self.store.next_sequence()
        try:
            data = await self._fetch_status(task.provider_task_id)
        except Exception as e:
            check_log.warning("timed_out_check_failed", error=str(e))
            return None

        task = self.store.get_task(task_id)
        if task is None or task_id not in self._timed_out:
            return None

        status = normalize_provider_status(data.get("status"))
        try:
            media_url = self._settled_url(data, status)
        except ProviderError as e:
            self._timed_out.discard(task_id)
            self.store.update_task(task_id, TaskUpdate(status=TaskStatus.FAILED, error=str(e)))
            check_log.error("timed_out_generation_failed", error=str(e))
            self._call_back(self.options.on_error, str(e))
            self._notify(NoticeLevel.ERROR, f"Failed to generate {media_type.value}", str(e))
            return None

        if media_url is None:
            progress = self._next_progress(task.progress, status, data)
            self.store.update_task(task_id, TaskUpdate(progress=progress), sequence=sequence)
            check_log.info("timed_out_generation_still_running", progress=progress)
            return None

        self._timed_out.discard(task_id)
        self.store.update_task(
            task_id,
            TaskUpdate(status=TaskStatus.COMPLETED, progress=100, media_url=media_url),
        )
        check_log.info("timed_out_generation_recovered", media_type=media_type.value)
        self._call_back(self.options.on_complete, media_url)
        self._notify(NoticeLevel.SUCCESS, f"{media_type.value.capitalize()} generated successfully")
        return media_url

    async def aclose(self) -> None:
        """End the session: cancel outstanding work and drop every task."""
        self._is_generating = False
        self._active_task_id = None
        self._requests.clear()
        self._timed_out.clear()
        await self.cleanup.teardown()
        self.store.clear_tasks()

    async def __aenter__(self) -> "MediaGenerationOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _produce(self, task_id: str, request: _AdmittedRequest) -> str:
        route = request.route
        breaker = self.breakers.get(route.function_name)
        response = await breaker.execute(lambda: self._invoke(route.function_name, request.payload))

        if not route.polled:
            media_url = extract_media_url(response.data)
            if not media_url:
                raise ProviderError("Provider returned no media URL", route.function_name)
            return media_url

        provider_task_id = extract_provider_task_id(response.data)
        if not provider_task_id:
            raise ProviderError("Provider returned no task id", route.function_name)
        self.store.update_task(task_id, TaskUpdate(provider_task_id=provider_task_id))
        log.info("generation_polling_started", task_id=task_id, provider_task_id=provider_task_id)

        poller = asyncio.create_task(self._poll(task_id, provider_task_id))
        self.cleanup.register_poller(task_id, poller)
        try:
            return await asyncio.wait_for(poller, timeout=self.options.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise _GenerationTimedOut(
                f"Generation timed out after {self.options.timeout_seconds:.0f}s",
                TASK_STATUS_FUNCTION,
            ) from e

    async def _invoke(self, function_name: str, payload: dict[str, Any]) -> ProviderResponse:
        response = await self.adapter.invoke(function_name, payload)
        if not response.success:
            raise ProviderError(response.error or "Failed to generate media", function_name)
        return response

    async def _poll(self, task_id: str, provider_task_id: str) -> str:
        poll_log = log.bind(task_id=task_id, provider_task_id=provider_task_id)
        while True:
            await asyncio.sleep(self.options.poll_interval_seconds)

            sequence = self.store.next_sequence()
            data = await self._fetch_status(provider_task_id)
            status = normalize_provider_status(data.get("status"))
            poll_log.debug("generation_status_polled", status=status)

            media_url = self._settled_url(data, status)
            if media_url is not None:
                return media_url

            task = self.store.get_task(task_id)
            if task is None:
                raise _GenerationCanceled("task removed")

            progress = self._next_progress(task.progress, status, data)
            if self.store.update_task(task_id, TaskUpdate(progress=progress), sequence=sequence):
                self._emit_progress(progress)

    @staticmethod
    def _settled_url(data: dict[str, Any], status: TaskStatus) -> str | None:
        """Media URL for a finished upstream task, None while it is still running.

        Raises:
            ProviderError: If the task failed or was canceled upstream, or
                finished without a media URL.
        """
        if status == TaskStatus.COMPLETED:
            media_url = extract_media_url(data)
            if not media_url:
                raise ProviderError("Task finished without a media URL", TASK_STATUS_FUNCTION)
            return media_url
        if status == TaskStatus.FAILED:
            raise ProviderError(
                str(data.get("error") or "Generation failed upstream"), TASK_STATUS_FUNCTION
            )
        if status == TaskStatus.CANCELED:
            raise ProviderError("Generation was canceled upstream", TASK_STATUS_FUNCTION)
        return None

    @staticmethod
    def _next_progress(current: int, status: TaskStatus, data: dict[str, Any]) -> int:
        progress = estimate_progress(current, status)
        reported = extract_percentage(data)
        if reported is not None:
            progress = max(progress, min(reported, PROCESSING_CEILING))
        return progress

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch_status(self, provider_task_id: str) -> dict[str, Any]:
        """Check upstream task status (idempotent, retried on transient errors).

        Retry Strategy:
            - Retriable errors: network errors, 429, 5xx
            - Max attempts: 3
            - Backoff: exponential, 1s to 10s
        """
        response = await self.adapter.invoke(TASK_STATUS_FUNCTION, {"taskId": provider_task_id})
        if not response.success:
            raise ProviderError(response.error or "Status check failed", TASK_STATUS_FUNCTION)
        return response.data

    async def _await_or_cancel(self, operation: Awaitable[T], handle: CancellationHandle) -> T:
        work = asyncio.ensure_future(operation)
        waiter = asyncio.create_task(handle.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if handle.cancelled:
            # Stop waiting; the upstream call is not interrupted
            work.cancel()
            raise _GenerationCanceled(handle.reason or USER_CANCEL_REASON)

        waiter.cancel()
        if work.cancelled():
            raise _GenerationCanceled("polling stopped")
        return work.result()

    async def _complete(self, task_id: str, media_type: MediaType, media_url: str) -> str | None:
        if not self._owns(task_id):
            return None

        self.store.update_task(
            task_id,
            TaskUpdate(status=TaskStatus.COMPLETED, progress=100, media_url=media_url),
        )
        self._release_active(task_id)
        await self.cleanup.complete_task(task_id, media_url)

        log.info("generation_completed", task_id=task_id, media_type=media_type.value)
        self._emit_progress(100)
        self._call_back(self.options.on_complete, media_url)
        self._notify(NoticeLevel.SUCCESS, f"{media_type.value.capitalize()} generated successfully")
        return media_url

    async def _fail(self, task_id: str, media_type: MediaType, error: Exception) -> None:
        message = str(error) or error.__class__.__name__
        if not self._owns(task_id):
            log.info("generation_failed_after_release", task_id=task_id, error=message)
            return

        self.store.update_task(task_id, TaskUpdate(status=TaskStatus.FAILED, error=message))
        self._release_active(task_id)
        await self.cleanup.fail_task(task_id, message)

        log.error(
            "generation_failed",
            task_id=task_id,
            media_type=media_type.value,
            error=message,
            error_type=error.__class__.__name__,
        )
        self._call_back(self.options.on_error, message)

        if isinstance(error, CircuitOpenError):
            self._notify(
                NoticeLevel.WARNING,
                f"{media_type.value.capitalize()} service is temporarily unavailable",
                f"Try again in {math.ceil(error.retry_after_seconds)}s",
            )
        else:
            self._notify(NoticeLevel.ERROR, f"Failed to generate {media_type.value}", message)

    async def _time_out(self, task_id: str, media_type: MediaType, error: ProviderError) -> None:
        message = str(error)
        if not self._owns(task_id):
            return

        # Task stays processing with its provider task id for check_timed_out_task()
        self._release_active(task_id)
        self._timed_out.add(task_id)
        await self.cleanup.fail_task(task_id, message)

        task = self.store.get_task(task_id)
        log.warning(
            "generation_timed_out",
            task_id=task_id,
            media_type=media_type.value,
            provider_task_id=task.provider_task_id if task is not None else None,
            timeout_seconds=self.options.timeout_seconds,
        )
        self._call_back(self.options.on_error, message)
        self._notify(
            NoticeLevel.WARNING,
            f"{media_type.value.capitalize()} generation is taking longer than expected",
            "Check again later to recover the result",
        )

    async def _cancel_upstream(self, task_id: str, provider_task_id: str) -> None:
        try:
            response = await self.adapter.invoke(TASK_CANCEL_FUNCTION, {"taskId": provider_task_id})
        except Exception as e:
            log.warning("upstream_cancel_failed", task_id=task_id, error=str(e))
            return
        if not response.success:
            log.warning("upstream_cancel_rejected", task_id=task_id, error=response.error)

    def _owns(self, task_id: str) -> bool:
        """True while ``task_id`` is the in-flight task and not yet terminal."""
        if not self._is_generating or self._active_task_id != task_id:
            return False
        task = self.store.get_task(task_id)
        return task is not None and not task.status.is_terminal

    def _release_active(self, task_id: str) -> None:
        if self._active_task_id == task_id:
            self._is_generating = False
            self._active_task_id = None

    def _emit_progress(self, progress: int) -> None:
        self._call_back(self.options.on_progress, progress)

    def _call_back(self, callback: Callable[[T], None] | None, value: T) -> None:
        """Invoke a caller callback; its errors are logged, never propagated."""
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            log.exception(
                "generation_callback_failed",
                callback=getattr(callback, "__name__", repr(callback)),
                error=str(e),
                error_type=e.__class__.__name__,
            )

    def _notify(self, level: NoticeLevel, message: str, description: str | None = None) -> None:
        if self.options.show_notices:
            self.notifier.notify(Notice(level=level, message=message, description=description))

    @staticmethod
    def _task_details(
        media_type: MediaType,
        params: dict[str, Any],
        reference_url: str | None,
    ) -> dict[str, Any]:
        details: dict[str, Any] = {}
        if media_type == MediaType.IMAGE and reference_url:
            details["reference_url"] = reference_url
        elif media_type == MediaType.VIDEO and params.get("duration") is not None:
            details["duration_seconds"] = params["duration"]
        elif media_type == MediaType.AUDIO and params.get("lyrics"):
            details["lyrics"] = params["lyrics"]
        return details
