"""Business logic services for the media generation layer."""

from mediagen.exceptions import CircuitOpenError, ProviderError
from mediagen.services.circuit_breaker import BreakerRegistry, CircuitBreaker, CircuitState
from mediagen.services.media_generation import GenerationOptions, MediaGenerationOrchestrator
from mediagen.services.progress import estimate_progress
from mediagen.services.providers import EdgeFunctionAdapter, ProviderAdapter, ProviderResponse
from mediagen.services.task_cleanup import CancellationHandle, TaskCleanup
from mediagen.services.task_state import TaskStateStore
from mediagen.services.telemetry import (
    LoggingTelemetrySink,
    MediaTelemetryService,
    RestTelemetrySink,
)

__all__ = [
    "BreakerRegistry",
    "CancellationHandle",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "EdgeFunctionAdapter",
    "GenerationOptions",
    "LoggingTelemetrySink",
    "MediaGenerationOrchestrator",
    "MediaTelemetryService",
    "ProviderAdapter",
    "ProviderError",
    "ProviderResponse",
    "RestTelemetrySink",
    "TaskCleanup",
    "TaskStateStore",
    "estimate_progress",
]
