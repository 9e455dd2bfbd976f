"""Tests for MediaGenerationOrchestrator.

This module drives the orchestrator through a scripted provider adapter
(tests.support.fakes.ScriptedAdapter) with zero poll interval.

Test Coverage:
- Synchronous providers: success, provider errors, missing URL
- Injected collaborators are used as given, even when empty
- Polled providers: progress smoothing, upstream failure, retry
- Timed-out generations: left open, recovered by check_timed_out_task
- Caller callbacks that raise
- Admission: one generation at a time, invalid requests
- Cancellation: local cancel, upstream cancel where supported
- Circuit breaker integration and notices
- Session teardown (aclose)
"""

import asyncio
import json
import logging

import httpx
import pytest

from mediagen.clients.edge_functions import EdgeFunctionError
from mediagen.exceptions import (
    GenerationInProgressError,
    InvalidGenerationRequestError,
    UnknownTaskError,
)
from mediagen.schemas.task import MediaType, TaskStatus, VideoTask
from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.media_generation import GenerationOptions, MediaGenerationOrchestrator
from mediagen.services.notifications import NoticeLevel, RecordingNotifier
from mediagen.services.progress import estimate_progress
from mediagen.services.providers import ProviderResponse
from mediagen.services.task_cleanup import TEARDOWN_REASON, TaskCleanup
from mediagen.services.task_state import TaskStateStore
from mediagen.services.telemetry import MediaTelemetryService
from tests.support.fakes import FailingSink, failed, gated, ok

IMAGE_URL = "https://cdn.example.com/image.png"
VIDEO_URL = "https://cdn.example.com/video.mp4"


async def _until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _messages(notifier, level: NoticeLevel | None = None) -> list[str]:
    return [n.message for n in notifier.notices if level is None or n.level == level]


class TestReferenceScenarios:
    @pytest.mark.asyncio
    async def test_red_cube_success(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", ok(mediaUrl="https://x/img.png"))

        task = orchestrator.begin_generation("a red cube", "image", "ideogram-v2")
        assert (task.status, task.progress) == (TaskStatus.PENDING, 0)

        assert await orchestrator.run_generation(task.task_id) == "https://x/img.png"
        final = orchestrator.current_task
        assert (final.status, final.progress) == (TaskStatus.COMPLETED, 100)
        assert final.media_url == "https://x/img.png"

    @pytest.mark.asyncio
    async def test_red_cube_rate_limited(self, orchestrator, adapter, callbacks):
        adapter.queue("ideogram-imagine", RuntimeError("rate limited"))

        assert await orchestrator.generate_media("a red cube", "image", "ideogram-v2") is None

        final = orchestrator.current_task
        assert (final.status, final.progress, final.error) == (TaskStatus.FAILED, 0, "rate limited")
        assert callbacks["error"] == ["rate limited"]


class TestInjectedCollaborators:
    @pytest.mark.asyncio
    async def test_empty_store_and_registry_are_kept(self, adapter, clock):
        store = TaskStateStore()
        registry = BreakerRegistry(failure_threshold=5, reset_timeout_ms=1000, clock=clock)
        notifier = RecordingNotifier()
        options = GenerationOptions(poll_interval_seconds=0)
        orchestrator = MediaGenerationOrchestrator(
            adapter, store=store, breakers=registry, notifier=notifier, options=options
        )

        assert orchestrator.store is store
        assert orchestrator.breakers is registry
        assert orchestrator.notifier is notifier
        assert orchestrator.options is options

        adapter.queue("ideogram-imagine", RuntimeError("provider 500"))
        for _ in range(4):
            await orchestrator.generate_media("a", "image", "ideogram-v2")

        assert len(store) == 4
        assert registry.get("ideogram-imagine").failure_count == 4
        assert registry.get("ideogram-imagine").state.value == "CLOSED"
        assert len(notifier.notices) > 0


class TestSynchronousProvider:
    """ideogram-v2 answers with the media URL directly."""

    @pytest.mark.asyncio
    async def test_success(self, orchestrator, adapter, callbacks, notifier, sink):
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        result = await orchestrator.generate_media("a red cube", "image", "ideogram-v2")

        assert result == IMAGE_URL
        task = orchestrator.current_task
        assert task.status == TaskStatus.COMPLETED
        assert task.progress == 100
        assert task.media_url == IMAGE_URL
        assert orchestrator.is_generating is False
        assert callbacks["progress"] == [0, 100]
        assert callbacks["complete"] == [IMAGE_URL]
        assert callbacks["error"] == []
        assert _messages(notifier) == ["Image generation started", "Image generated successfully"]
        assert sink.event_types() == ["generation_started", "generation_completed"]

    @pytest.mark.asyncio
    async def test_payload_forwarded(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", ok(images=[IMAGE_URL]))

        await orchestrator.generate_media(
            "  a red cube  ", "image", "ideogram-v2", params={"aspect_ratio": "16:9"}
        )

        payload = adapter.calls_to("ideogram-imagine")[0]
        assert payload == {"aspect_ratio": "16:9", "prompt": "a red cube", "model": "ideogram-v2"}

    @pytest.mark.asyncio
    async def test_provider_error_fails_task(self, orchestrator, adapter, callbacks, notifier, sink):
        adapter.queue("ideogram-imagine", failed("quota exceeded"))

        result = await orchestrator.generate_media("a red cube", "image", "ideogram-v2")

        assert result is None
        task = orchestrator.current_task
        assert task.status == TaskStatus.FAILED
        assert task.error == "quota exceeded"
        assert task.media_url is None
        assert orchestrator.is_generating is False
        assert callbacks["error"] == ["quota exceeded"]
        assert callbacks["complete"] == []
        error_notices = [n for n in notifier.notices if n.level == NoticeLevel.ERROR]
        assert error_notices[-1].message == "Failed to generate image"
        assert error_notices[-1].description == "quota exceeded"
        assert sink.event_types()[-1] == "generation_failed"

    @pytest.mark.asyncio
    async def test_failure_keeps_progress_at_zero(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", RuntimeError("connection reset"))

        await orchestrator.generate_media("a red cube", "image", "ideogram-v2")

        task = orchestrator.current_task
        assert task.status == TaskStatus.FAILED
        assert task.progress == 0
        assert task.error == "connection reset"

    @pytest.mark.asyncio
    async def test_missing_url_fails(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", ok(note="no url here"))

        assert await orchestrator.generate_media("a red cube", "image", "ideogram-v2") is None
        assert orchestrator.current_task.error == "Provider returned no media URL"

    @pytest.mark.asyncio
    async def test_unsuccessful_without_message_uses_default(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", ProviderResponse(success=False))

        await orchestrator.generate_media("a red cube", "image", "ideogram-v2")

        assert orchestrator.current_task.error == "Failed to generate media"

    @pytest.mark.asyncio
    async def test_telemetry_failure_does_not_affect_task(self, adapter, store, registry):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            cleanup=TaskCleanup(MediaTelemetryService(FailingSink())),
            breakers=registry,
        )
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        assert await orchestrator.generate_media("a red cube", "image", "ideogram-v2") == IMAGE_URL
        assert orchestrator.current_task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_notices_can_be_disabled(self, adapter, store, cleanup, registry, notifier):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            cleanup=cleanup,
            breakers=registry,
            notifier=notifier,
            options=GenerationOptions(show_notices=False),
        )
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        assert await orchestrator.generate_media("a red cube", "image", "ideogram-v2") == IMAGE_URL
        assert list(notifier.notices) == []


class TestPolledProvider:
    """Midjourney, Kling and Suno return an upstream task id to poll."""

    @pytest.mark.asyncio
    async def test_video_polls_until_finished(self, orchestrator, adapter, callbacks):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="processing"),
            ok(status="processing"),
            ok(status="finished", mediaUrl=VIDEO_URL),
        )

        result = await orchestrator.generate_media(
            "ocean waves", "video", "kling", params={"duration": 5}
        )

        assert result == VIDEO_URL
        task = orchestrator.current_task
        assert isinstance(task, VideoTask)
        assert task.duration_seconds == 5
        assert task.provider_task_id == "up-1"
        assert task.status == TaskStatus.COMPLETED
        assert callbacks["progress"] == [0, 50, 60, 100]
        assert adapter.calls_to("apiframe-task-status")[0] == {"taskId": "up-1"}

    @pytest.mark.asyncio
    async def test_pending_status_progress_band(self, orchestrator, adapter, callbacks):
        adapter.queue("apiframe-suno-create-task", ok(task_id="song-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="queued"),
            ok(status="queued"),
            ok(status="finished", songs=[{"audio_url": "https://cdn/song.mp3"}]),
        )

        result = await orchestrator.generate_media(
            "a sea shanty", "audio", "suno", params={"lyrics": "yo ho"}
        )

        assert result == "https://cdn/song.mp3"
        assert callbacks["progress"] == [0, 5, 10, 100]
        assert orchestrator.current_task.lyrics == "yo ho"

    @pytest.mark.asyncio
    async def test_reported_percentage_is_used_below_ceiling(self, orchestrator, adapter, callbacks):
        adapter.queue("apiframe-midjourney-imagine", ok(taskId="mj-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="processing", percentage=85),
            ok(status="processing", percentage=99),
            ok(status="finished", images=[IMAGE_URL]),
        )

        await orchestrator.generate_media("a castle", "image", "midjourney")

        assert callbacks["progress"] == [0, 85, 90, 100]

    @pytest.mark.asyncio
    async def test_reference_url_forwarded(self, orchestrator, adapter):
        adapter.queue("apiframe-midjourney-imagine", ok(taskId="mj-1"))
        adapter.queue("apiframe-task-status", ok(status="finished", images=[IMAGE_URL]))

        await orchestrator.generate_media(
            "a castle", "image", "midjourney", reference_url="https://ref/img.png"
        )

        payload = adapter.calls_to("apiframe-midjourney-imagine")[0]
        assert payload["referenceUrl"] == "https://ref/img.png"
        assert orchestrator.current_task.reference_url == "https://ref/img.png"

    @pytest.mark.asyncio
    async def test_upstream_failure(self, orchestrator, adapter, callbacks):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="processing"),
            ok(status="failed", error="content policy violation"),
        )

        assert await orchestrator.generate_media("ocean", "video", "kling") is None

        task = orchestrator.current_task
        assert task.status == TaskStatus.FAILED
        assert task.error == "content policy violation"
        assert task.progress == 50
        assert callbacks["error"] == ["content policy violation"]

    @pytest.mark.asyncio
    async def test_missing_provider_task_id_fails(self, orchestrator, adapter):
        adapter.queue("apiframe-kling-video", ok(message="accepted"))

        assert await orchestrator.generate_media("ocean", "video", "kling") is None
        assert orchestrator.current_task.error == "Provider returned no task id"

    @pytest.mark.asyncio
    async def test_non_string_status_counts_as_processing(self, orchestrator, adapter, callbacks):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status=3),
            ok(status={"phase": "render"}),
            ok(status="finished", mediaUrl=VIDEO_URL),
        )

        assert await orchestrator.generate_media("ocean", "video", "kling") == VIDEO_URL
        assert orchestrator.current_task.status == TaskStatus.COMPLETED
        assert callbacks["progress"] == [0, 50, 60, 100]
        assert callbacks["error"] == []

    @pytest.mark.asyncio
    async def test_status_lines_carry_task_ids(self, orchestrator, adapter, caplog):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="processing"),
            ok(status="finished", mediaUrl=VIDEO_URL),
        )

        with caplog.at_level(logging.DEBUG, logger="mediagen.services.media_generation"):
            await orchestrator.generate_media("ocean", "video", "kling")

        entries = [
            json.loads(record.getMessage())
            for record in caplog.records
            if record.name == "mediagen.services.media_generation"
        ]
        polled = [entry for entry in entries if entry["event"] == "generation_status_polled"]
        task_id = orchestrator.current_task.task_id
        assert [entry["status"] for entry in polled] == ["processing", "completed"]
        assert all(entry["task_id"] == task_id for entry in polled)
        assert all(entry["provider_task_id"] == "up-1" for entry in polled)

    @pytest.mark.asyncio
    async def test_transient_status_error_retried(self, orchestrator, adapter):
        unavailable = EdgeFunctionError(
            "apiframe-task-status returned 503",
            "apiframe-task-status",
            httpx.Response(503, text="unavailable"),
        )
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            unavailable,
            ok(status="finished", mediaUrl=VIDEO_URL),
        )

        assert await orchestrator.generate_media("ocean", "video", "kling") == VIDEO_URL
        assert len(adapter.calls_to("apiframe-task-status")) == 2

    @pytest.mark.asyncio
    async def test_client_error_status_not_retried(self, orchestrator, adapter):
        not_found = EdgeFunctionError(
            "task not found", "apiframe-task-status", httpx.Response(404, text="missing")
        )
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue("apiframe-task-status", not_found)

        assert await orchestrator.generate_media("ocean", "video", "kling") is None
        assert orchestrator.current_task.error == "task not found"
        assert len(adapter.calls_to("apiframe-task-status")) == 1


@pytest.fixture
def slow_orchestrator(adapter, store, cleanup, registry, notifier, callbacks):
    """Orchestrator whose polling window closes after 50ms."""
    return MediaGenerationOrchestrator(
        adapter,
        store=store,
        cleanup=cleanup,
        breakers=registry,
        notifier=notifier,
        options=GenerationOptions(
            on_progress=callbacks["progress"].append,
            on_complete=callbacks["complete"].append,
            on_error=callbacks["error"].append,
            poll_interval_seconds=0.01,
            timeout_seconds=0.05,
        ),
    )


async def _time_out_video(orchestrator, adapter) -> str:
    adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
    adapter.queue("apiframe-task-status", ok(status="processing"))
    assert await orchestrator.generate_media("ocean", "video", "kling") is None
    return orchestrator.current_task.task_id


class TestTimedOutGeneration:
    """Polling stops at timeout_seconds; the upstream task may still finish."""

    @pytest.mark.asyncio
    async def test_timeout_leaves_task_recoverable(
        self, slow_orchestrator, adapter, cleanup, callbacks, notifier
    ):
        task_id = await _time_out_video(slow_orchestrator, adapter)

        task = slow_orchestrator.store.get_task(task_id)
        assert task.status == TaskStatus.PROCESSING
        assert task.provider_task_id == "up-1"
        assert task.error is None
        assert slow_orchestrator.is_generating is False
        assert slow_orchestrator.timed_out_task_ids == {task_id}
        assert cleanup.poller_count == 0
        assert cleanup.outstanding_task_ids == []
        assert callbacks["error"] == ["Generation timed out after 0s"]
        notice = notifier.notices[-1]
        assert notice.level == NoticeLevel.WARNING
        assert notice.message == "Video generation is taking longer than expected"

    @pytest.mark.asyncio
    async def test_late_completion_recovered(self, slow_orchestrator, adapter, callbacks, notifier):
        task_id = await _time_out_video(slow_orchestrator, adapter)
        adapter.reset("apiframe-task-status", ok(status="finished", mediaUrl=VIDEO_URL))

        assert await slow_orchestrator.check_timed_out_task(task_id) == VIDEO_URL

        task = slow_orchestrator.store.get_task(task_id)
        assert (task.status, task.progress, task.media_url) == (
            TaskStatus.COMPLETED,
            100,
            VIDEO_URL,
        )
        assert adapter.calls_to("apiframe-task-status")[-1] == {"taskId": "up-1"}
        assert slow_orchestrator.timed_out_task_ids == frozenset()
        assert callbacks["complete"] == [VIDEO_URL]
        assert notifier.notices[-1].message == "Video generated successfully"

    @pytest.mark.asyncio
    async def test_still_running_refreshes_progress(self, slow_orchestrator, adapter):
        task_id = await _time_out_video(slow_orchestrator, adapter)
        adapter.reset("apiframe-task-status", ok(status="processing", percentage=70))
        before = slow_orchestrator.store.get_task(task_id).progress

        assert await slow_orchestrator.check_timed_out_task(task_id) is None

        task = slow_orchestrator.store.get_task(task_id)
        assert task.status == TaskStatus.PROCESSING
        assert task.progress == max(70, estimate_progress(before, TaskStatus.PROCESSING))
        assert slow_orchestrator.timed_out_task_ids == {task_id}

    @pytest.mark.asyncio
    async def test_upstream_failure_after_timeout(self, slow_orchestrator, adapter, callbacks):
        task_id = await _time_out_video(slow_orchestrator, adapter)
        adapter.reset("apiframe-task-status", ok(status="failed", error="render crashed"))

        assert await slow_orchestrator.check_timed_out_task(task_id) is None

        task = slow_orchestrator.store.get_task(task_id)
        assert (task.status, task.error) == (TaskStatus.FAILED, "render crashed")
        assert callbacks["error"][-1] == "render crashed"
        assert slow_orchestrator.timed_out_task_ids == frozenset()

    @pytest.mark.asyncio
    async def test_status_check_error_keeps_task_checkable(self, slow_orchestrator, adapter):
        task_id = await _time_out_video(slow_orchestrator, adapter)
        adapter.reset("apiframe-task-status", failed("status service unavailable"))

        assert await slow_orchestrator.check_timed_out_task(task_id) is None

        assert slow_orchestrator.store.get_task(task_id).status == TaskStatus.PROCESSING
        assert slow_orchestrator.timed_out_task_ids == {task_id}

    @pytest.mark.asyncio
    async def test_only_timed_out_tasks_can_be_checked(self, orchestrator, adapter):
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))
        await orchestrator.generate_media("a red cube", "image", "ideogram-v2")

        with pytest.raises(UnknownTaskError):
            await orchestrator.check_timed_out_task(orchestrator.current_task.task_id)
        with pytest.raises(UnknownTaskError):
            await orchestrator.check_timed_out_task("missing")

    @pytest.mark.asyncio
    async def test_new_generation_allowed_after_timeout(self, slow_orchestrator, adapter):
        await _time_out_video(slow_orchestrator, adapter)
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        assert await slow_orchestrator.generate_media("a", "image", "ideogram-v2") == IMAGE_URL

    @pytest.mark.asyncio
    async def test_aclose_forgets_timed_out_tasks(self, slow_orchestrator, adapter):
        task_id = await _time_out_video(slow_orchestrator, adapter)

        await slow_orchestrator.aclose()

        assert slow_orchestrator.timed_out_task_ids == frozenset()
        with pytest.raises(UnknownTaskError):
            await slow_orchestrator.check_timed_out_task(task_id)


def _raise(value):
    raise RuntimeError(f"ui callback broke on {value!r}")


class TestCallbackFailures:
    """Errors raised by caller callbacks are logged and never escape."""

    @pytest.mark.asyncio
    async def test_raising_progress_callback(self, adapter, store, cleanup, registry, caplog):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            cleanup=cleanup,
            breakers=registry,
            options=GenerationOptions(on_progress=_raise, poll_interval_seconds=0),
        )
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        with caplog.at_level(logging.ERROR, logger="mediagen.services.media_generation"):
            result = await orchestrator.generate_media("a", "image", "ideogram-v2")

        assert result == IMAGE_URL
        assert orchestrator.current_task.status == TaskStatus.COMPLETED
        assert orchestrator.is_generating is False
        assert cleanup.outstanding_task_ids == []
        failures = [
            json.loads(record.getMessage())
            for record in caplog.records
            if "generation_callback_failed" in record.getMessage()
        ]
        assert [entry["callback"] for entry in failures] == ["_raise", "_raise"]

    @pytest.mark.asyncio
    async def test_raising_progress_callback_while_polling(self, adapter, store, registry):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            breakers=registry,
            options=GenerationOptions(on_progress=_raise, poll_interval_seconds=0),
        )
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue(
            "apiframe-task-status",
            ok(status="processing"),
            ok(status="finished", mediaUrl=VIDEO_URL),
        )

        assert await orchestrator.generate_media("ocean", "video", "kling") == VIDEO_URL
        assert orchestrator.current_task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_raising_complete_callback(self, adapter, store, registry, notifier):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            breakers=registry,
            notifier=notifier,
            options=GenerationOptions(on_complete=_raise),
        )
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        assert await orchestrator.generate_media("a", "image", "ideogram-v2") == IMAGE_URL
        assert orchestrator.current_task.status == TaskStatus.COMPLETED
        assert "Image generated successfully" in _messages(notifier, NoticeLevel.SUCCESS)

    @pytest.mark.asyncio
    async def test_raising_error_callback(self, adapter, store, registry, notifier):
        orchestrator = MediaGenerationOrchestrator(
            adapter,
            store=store,
            breakers=registry,
            notifier=notifier,
            options=GenerationOptions(on_error=_raise),
        )
        adapter.queue("ideogram-imagine", failed("quota exceeded"))

        assert await orchestrator.generate_media("a", "image", "ideogram-v2") is None
        assert orchestrator.current_task.status == TaskStatus.FAILED
        assert orchestrator.is_generating is False
        assert "Failed to generate image" in _messages(notifier, NoticeLevel.ERROR)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_second_generation_rejected_while_in_flight(self, orchestrator, adapter, notifier):
        gate = asyncio.Event()
        adapter.queue("ideogram-imagine", gated(gate, ok(mediaUrl=IMAGE_URL)))

        first = asyncio.create_task(orchestrator.generate_media("a", "image", "ideogram-v2"))
        await _until(lambda: len(adapter.calls_to("ideogram-imagine")) == 1)

        second = await orchestrator.generate_media("b", "image", "ideogram-v2")

        assert second is None
        assert len(orchestrator.store) == 1
        assert len(adapter.calls_to("ideogram-imagine")) == 1
        assert "A media generation task is already in progress" in _messages(
            notifier, NoticeLevel.ERROR
        )

        gate.set()
        assert await first == IMAGE_URL
        assert orchestrator.current_task.prompt == "a"

    def test_begin_generation_raises_when_busy(self, orchestrator):
        first = orchestrator.begin_generation("a", "image", "ideogram-v2")

        with pytest.raises(GenerationInProgressError) as exc_info:
            orchestrator.begin_generation("b", "image", "ideogram-v2")

        assert exc_info.value.task_id == first.task_id
        assert orchestrator.active_task_id == first.task_id

    @pytest.mark.parametrize(
        "prompt,media_type,model,message",
        [
            ("   ", "image", "ideogram-v2", "Prompt must not be empty"),
            ("x", "video", "ideogram-v2", "Unsupported media type or model: video / ideogram-v2"),
            ("x", "image", "dall-e", "Unsupported media type or model: image / dall-e"),
            ("x", "hologram", "kling", "Unsupported media type: hologram"),
        ],
    )
    def test_invalid_requests(self, orchestrator, prompt, media_type, model, message):
        with pytest.raises(InvalidGenerationRequestError, match=message):
            orchestrator.begin_generation(prompt, media_type, model)

        assert orchestrator.is_generating is False
        assert len(orchestrator.store) == 0

    @pytest.mark.asyncio
    async def test_invalid_request_notice_and_no_network(self, orchestrator, adapter, notifier):
        result = await orchestrator.generate_media("", "image", "ideogram-v2")

        assert result is None
        assert adapter.calls == []
        notice = notifier.notices[-1]
        assert notice.level == NoticeLevel.ERROR
        assert notice.message == "Invalid generation request"

    def test_invalid_video_duration(self, orchestrator):
        with pytest.raises(InvalidGenerationRequestError, match="Invalid generation parameters"):
            orchestrator.begin_generation("x", "video", "kling", params={"duration": 600})

    @pytest.mark.asyncio
    async def test_run_unknown_task_returns_none(self, orchestrator):
        assert await orchestrator.run_generation("never-admitted") is None


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_in_flight_sync_provider(
        self, orchestrator, adapter, callbacks, notifier, sink
    ):
        gate = asyncio.Event()
        adapter.queue("ideogram-imagine", gated(gate, ok(mediaUrl=IMAGE_URL)))
        run = asyncio.create_task(orchestrator.generate_media("a", "image", "ideogram-v2"))
        await _until(lambda: len(adapter.calls) == 1)

        assert await orchestrator.cancel_generation() is True

        task = orchestrator.current_task
        assert task.status == TaskStatus.CANCELED
        assert orchestrator.is_generating is False

        gate.set()
        assert await run is None
        assert orchestrator.current_task.status == TaskStatus.CANCELED
        assert callbacks["complete"] == []
        assert callbacks["error"] == []
        assert "Generation canceled" in _messages(notifier, NoticeLevel.INFO)
        assert "Image generated successfully" not in _messages(notifier)
        assert sink.event_types() == ["generation_started", "generation_canceled"]

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self, orchestrator):
        assert await orchestrator.cancel_generation() is False

    @pytest.mark.asyncio
    async def test_cancel_before_run_starts(self, orchestrator, adapter):
        task = orchestrator.begin_generation("a", "image", "ideogram-v2")

        assert await orchestrator.cancel_generation() is True
        assert await orchestrator.run_generation(task.task_id) is None

        assert adapter.calls == []
        assert orchestrator.store.get_task(task.task_id).status == TaskStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_calls_upstream_cancel_when_supported(self, orchestrator, adapter, cleanup):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue("apiframe-task-status", ok(status="processing"))
        adapter.queue("apiframe-task-cancel", ok(canceled=True))
        run = asyncio.create_task(orchestrator.generate_media("ocean", "video", "kling"))
        await _until(lambda: len(adapter.calls_to("apiframe-task-status")) >= 1)

        assert await orchestrator.cancel_generation() is True
        assert await run is None

        assert adapter.calls_to("apiframe-task-cancel") == [{"taskId": "up-1"}]
        assert orchestrator.current_task.status == TaskStatus.CANCELED
        assert cleanup.poller_count == 0

    @pytest.mark.asyncio
    async def test_cancel_without_upstream_endpoint_is_local(self, orchestrator, adapter):
        adapter.queue("apiframe-suno-create-task", ok(taskId="song-1"))
        adapter.queue("apiframe-task-status", ok(status="processing"))
        run = asyncio.create_task(orchestrator.generate_media("shanty", "audio", "suno"))
        await _until(lambda: len(adapter.calls_to("apiframe-task-status")) >= 1)

        assert await orchestrator.cancel_generation() is True
        assert await run is None

        assert adapter.calls_to("apiframe-task-cancel") == []
        assert orchestrator.current_task.status == TaskStatus.CANCELED

    @pytest.mark.asyncio
    async def test_upstream_cancel_failure_is_ignored(self, orchestrator, adapter):
        adapter.queue("apiframe-kling-video", ok(taskId="up-1"))
        adapter.queue("apiframe-task-status", ok(status="processing"))
        adapter.queue("apiframe-task-cancel", RuntimeError("vendor down"))
        run = asyncio.create_task(orchestrator.generate_media("ocean", "video", "kling"))
        await _until(lambda: len(adapter.calls_to("apiframe-task-status")) >= 1)

        assert await orchestrator.cancel_generation() is True
        assert await run is None
        assert orchestrator.current_task.status == TaskStatus.CANCELED

    @pytest.mark.asyncio
    async def test_new_generation_allowed_after_cancel(self, orchestrator, adapter):
        gate = asyncio.Event()
        adapter.queue(
            "ideogram-imagine",
            gated(gate, ok(mediaUrl="https://cdn/old.png")),
            ok(mediaUrl=IMAGE_URL),
        )
        run = asyncio.create_task(orchestrator.generate_media("a", "image", "ideogram-v2"))
        await _until(lambda: len(adapter.calls) == 1)
        await orchestrator.cancel_generation()
        await run

        result = await orchestrator.generate_media("b", "image", "ideogram-v2")

        assert result == IMAGE_URL
        assert orchestrator.current_task.prompt == "b"
        assert len(orchestrator.store) == 2


class TestCircuitBreakerIntegration:
    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, orchestrator, adapter, registry, notifier):
        adapter.queue("ideogram-imagine", RuntimeError("provider 500"))
        for _ in range(3):
            await orchestrator.generate_media("a", "image", "ideogram-v2")
        assert registry.get("ideogram-imagine").state.value == "OPEN"

        result = await orchestrator.generate_media("a", "image", "ideogram-v2")

        assert result is None
        assert len(adapter.calls_to("ideogram-imagine")) == 3
        task = orchestrator.current_task
        assert task.status == TaskStatus.FAILED
        assert "Circuit breaker for ideogram-imagine is OPEN" in task.error
        notice = notifier.notices[-1]
        assert notice.level == NoticeLevel.WARNING
        assert notice.message == "Image service is temporarily unavailable"
        assert notice.description == "Try again in 30s"

    @pytest.mark.asyncio
    async def test_breakers_are_per_service(self, orchestrator, adapter, registry):
        adapter.queue("ideogram-imagine", RuntimeError("provider 500"))
        adapter.queue("apiframe-midjourney-imagine", ok(taskId="mj-1"))
        adapter.queue("apiframe-task-status", ok(status="finished", images=[IMAGE_URL]))
        for _ in range(3):
            await orchestrator.generate_media("a", "image", "ideogram-v2")

        assert await orchestrator.generate_media("a", "image", "midjourney") == IMAGE_URL
        assert registry.get("apiframe-midjourney-imagine").state.value == "CLOSED"

    @pytest.mark.asyncio
    async def test_recovers_after_cooldown(self, orchestrator, adapter, registry, clock):
        adapter.queue(
            "ideogram-imagine",
            RuntimeError("provider 500"),
            RuntimeError("provider 500"),
            RuntimeError("provider 500"),
            ok(mediaUrl=IMAGE_URL),
        )
        for _ in range(3):
            await orchestrator.generate_media("a", "image", "ideogram-v2")

        clock.advance(30)

        assert await orchestrator.generate_media("a", "image", "ideogram-v2") == IMAGE_URL
        assert registry.get("ideogram-imagine").state.value == "CLOSED"


class TestSessionTeardown:
    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight_work(self, orchestrator, adapter, cleanup, sink):
        gate = asyncio.Event()
        adapter.queue("ideogram-imagine", gated(gate, ok(mediaUrl=IMAGE_URL)))
        run = asyncio.create_task(orchestrator.generate_media("a", "image", "ideogram-v2"))
        await _until(lambda: len(adapter.calls) == 1)
        handle = cleanup.get_handle(orchestrator.active_task_id)

        await orchestrator.aclose()

        assert await run is None
        assert handle.cancelled
        assert handle.reason == TEARDOWN_REASON
        assert orchestrator.is_generating is False
        assert len(orchestrator.store) == 0
        assert cleanup.outstanding_task_ids == []
        assert sink.records[-1]["details"] == {"reason": TEARDOWN_REASON}

    @pytest.mark.asyncio
    async def test_context_manager(self, adapter):
        adapter.queue("ideogram-imagine", ok(mediaUrl=IMAGE_URL))

        async with MediaGenerationOrchestrator(adapter) as orchestrator:
            assert await orchestrator.generate_media("a", MediaType.IMAGE, "ideogram-v2") == IMAGE_URL

        assert orchestrator.current_task is None
