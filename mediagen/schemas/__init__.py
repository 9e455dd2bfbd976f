"""Pydantic schemas for tasks, requests and telemetry."""

from mediagen.schemas.task import (
    AudioTask,
    CancelResponse,
    GenerationRequest,
    GenerationTask,
    GenerationTaskBase,
    ImageTask,
    MediaType,
    TaskStatus,
    TaskUpdate,
    VideoTask,
)
from mediagen.schemas.telemetry import TelemetryEvent, TelemetryEventType, TelemetryOptions

__all__ = [
    "AudioTask",
    "CancelResponse",
    "GenerationRequest",
    "GenerationTask",
    "GenerationTaskBase",
    "ImageTask",
    "MediaType",
    "TaskStatus",
    "TaskUpdate",
    "TelemetryEvent",
    "TelemetryEventType",
    "TelemetryOptions",
    "VideoTask",
]
