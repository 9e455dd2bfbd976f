"""Media Generation Orchestration Layer.

This package tracks asynchronous image, video and audio generation tasks:
admission, provider calls through per-service circuit breakers, progress
estimation, cancellation and lifecycle telemetry. Providers are reached
through backend edge functions.
"""

from mediagen.services.circuit_breaker import BreakerRegistry
from mediagen.services.media_generation import MediaGenerationOrchestrator
from mediagen.services.task_state import TaskStateStore

__all__ = [
    "BreakerRegistry",
    "MediaGenerationOrchestrator",
    "TaskStateStore",
]
