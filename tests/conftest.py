"""Shared pytest fixtures for media generation tests.

This module wires the in-memory collaborators (fake clock, recording
telemetry sink, scripted provider adapter) into breakers, stores and a
full orchestrator whose polling runs without real delays.
"""

from typing import Any

import pytest

from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.media_generation import GenerationOptions, MediaGenerationOrchestrator
from mediagen.services.notifications import RecordingNotifier
from mediagen.services.task_cleanup import TaskCleanup
from mediagen.services.task_state import TaskStateStore
from mediagen.services.telemetry import MediaTelemetryService
from tests.support.fakes import FakeClock, RecordingSink, ScriptedAdapter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> BreakerRegistry:
    """Breaker registry with threshold 3, 30s cooldown and the fake clock."""
    return BreakerRegistry(failure_threshold=3, reset_timeout_ms=30_000, clock=clock)


@pytest.fixture
def store() -> TaskStateStore:
    return TaskStateStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def telemetry(sink: RecordingSink) -> MediaTelemetryService:
    return MediaTelemetryService(sink)


@pytest.fixture
def cleanup(telemetry: MediaTelemetryService) -> TaskCleanup:
    return TaskCleanup(telemetry)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def callbacks() -> dict[str, list[Any]]:
    """Values passed to on_progress / on_complete / on_error."""
    return {"progress": [], "complete": [], "error": []}


@pytest.fixture
def options(callbacks: dict[str, list[Any]]) -> GenerationOptions:
    """Options recording every callback, polling without delay."""
    return GenerationOptions(
        on_progress=callbacks["progress"].append,
        on_complete=callbacks["complete"].append,
        on_error=callbacks["error"].append,
        poll_interval_seconds=0,
        timeout_seconds=5,
    )


@pytest.fixture
def orchestrator(
    adapter: ScriptedAdapter,
    store: TaskStateStore,
    cleanup: TaskCleanup,
    registry: BreakerRegistry,
    notifier: RecordingNotifier,
    options: GenerationOptions,
) -> MediaGenerationOrchestrator:
    """Orchestrator wired to the scripted adapter and in-memory collaborators."""
    return MediaGenerationOrchestrator(
        adapter,
        store=store,
        cleanup=cleanup,
        breakers=registry,
        notifier=notifier,
        options=options,
    )
