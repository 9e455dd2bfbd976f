"""Pydantic schemas for media telemetry events.

Events are structured records of task lifecycle transitions. They are
emitted for observability only and never drive control flow.
"""

import enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mediagen.schemas.task import MediaType


class TelemetryEventType(str, enum.Enum):
    """Event types recorded in the media_analytics table."""

    GENERATION_STARTED = "generation_started"
    GENERATION_COMPLETED = "generation_completed"
    GENERATION_FAILED = "generation_failed"
    GENERATION_CANCELED = "generation_canceled"
    PERFORMANCE_METRIC = "performance_metric"


class TelemetryEvent(BaseModel):
    """Schema for a single telemetry event.

    Attributes:
        event_type: Lifecycle transition or metric kind.
        media_type: Media type involved, None for generic metrics.
        task_id: Task the event belongs to.
        model_id: Model that served the task.
        duration_ms: Elapsed time since the task started (terminal events).
        details: Event-specific payload (error message, cancel reason, ...).
        metadata: Free-form context added by the emitter.
    """

    model_config = ConfigDict(frozen=True)

    event_type: TelemetryEventType
    media_type: MediaType | None = None
    task_id: str | None = None
    model_id: str | None = None
    duration_ms: float | None = Field(default=None, ge=0)
    details: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TelemetryOptions(BaseModel):
    """Switches controlling which events are recorded.

    anonymous_tracking drops the user id from stored records.
    performance_metrics and error_reporting filter those event types.
    """

    enabled: bool = True
    anonymous_tracking: bool = True
    performance_metrics: bool = True
    error_reporting: bool = True
