"""Pydantic schemas for media generation tasks.

This module defines the task records held by the TaskStateStore and the
partial-update schema the orchestrator applies to them.

Task Shape:
    GenerationTask is a closed tagged union (ImageTask | VideoTask | AudioTask)
    discriminated by ``type``. All variants share the status/progress base;
    unknown fields are rejected (extra="forbid").

Status Workflow:
    pending → processing → completed | failed | canceled

    pending may also go straight to a terminal state (synchronous providers,
    or a cancel before the provider call starts). Terminal states have no
    outgoing transitions. A same-status update (progress refresh) is always
    allowed.
"""

import enum
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from mediagen.exceptions import InvalidStateTransitionError


class TaskStatus(str, enum.Enum):
    """Lifecycle status of a generation task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class MediaType(str, enum.Enum):
    """Kind of media a task produces."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED})

VALID_TRANSITIONS: dict[TaskStatus, list[TaskStatus]] = {
    TaskStatus.PENDING: [
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELED,
    ],
    TaskStatus.PROCESSING: [TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED],
    TaskStatus.COMPLETED: [],  # Terminal state - no transitions allowed
    TaskStatus.FAILED: [],
    TaskStatus.CANCELED: [],
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> None:
    """Check a status change against VALID_TRANSITIONS.

    Args:
        from_status: Current status.
        to_status: Requested status.

    Raises:
        InvalidStateTransitionError: If the transition is not allowed.
    """
    if from_status == to_status:
        return
    if to_status not in VALID_TRANSITIONS.get(from_status, []):
        raise InvalidStateTransitionError(
            f"Invalid transition: {from_status.value} → {to_status.value}",
            from_status=from_status,
            to_status=to_status,
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationTaskBase(BaseModel):
    """Fields shared by every task variant.

    Invariants (validated on every construction and merge):
        - media_url is set only when status is completed
        - error is set only when status is failed
        - progress is an integer in 0..100
    """

    model_config = ConfigDict(extra="forbid", use_enum_values=False)

    task_id: str = Field(..., min_length=1, description="Opaque id assigned by the orchestrator")
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100)
    media_url: str | None = Field(default=None, description="Result URL (completed only)")
    error: str | None = Field(default=None, description="Failure message (failed only)")
    prompt: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1, examples=["ideogram-v2"])
    provider_task_id: str | None = Field(
        default=None,
        description="Upstream task id for asynchronous providers",
    )
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_result_fields(self) -> "GenerationTaskBase":
        if self.media_url is not None and self.status != TaskStatus.COMPLETED:
            raise ValueError("media_url is only allowed on completed tasks")
        if self.error is not None and self.status != TaskStatus.FAILED:
            raise ValueError("error is only allowed on failed tasks")
        return self


class ImageTask(GenerationTaskBase):
    """Image generation task (Ideogram, Midjourney)."""

    type: Literal["image"] = "image"
    reference_url: str | None = Field(default=None, description="Optional reference image")


class VideoTask(GenerationTaskBase):
    """Video generation task (Kling)."""

    type: Literal["video"] = "video"
    duration_seconds: int | None = Field(default=None, ge=1, le=60)


class AudioTask(GenerationTaskBase):
    """Audio generation task (Suno)."""

    type: Literal["audio"] = "audio"
    lyrics: str | None = Field(default=None)


GenerationTask = Annotated[
    Union[ImageTask, VideoTask, AudioTask],
    Field(discriminator="type"),
]

generation_task_adapter: TypeAdapter[GenerationTask] = TypeAdapter(GenerationTask)

TASK_CLASSES: dict[MediaType, type[GenerationTaskBase]] = {
    MediaType.IMAGE: ImageTask,
    MediaType.VIDEO: VideoTask,
    MediaType.AUDIO: AudioTask,
}


class TaskUpdate(BaseModel):
    """Partial update for a stored task.

    Only fields explicitly set are merged (model_dump(exclude_unset=True)),
    so ``TaskUpdate(progress=40)`` leaves status untouched.
    """

    model_config = ConfigDict(extra="forbid")

    status: TaskStatus | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    media_url: str | None = None
    error: str | None = None
    provider_task_id: str | None = None

    def changes(self) -> dict[str, object]:
        """Return only the fields the caller set."""
        return self.model_dump(exclude_unset=True)


def new_task(
    task_id: str,
    media_type: MediaType,
    prompt: str,
    model: str,
    **details: object,
) -> GenerationTaskBase:
    """Build a pending task of the variant matching ``media_type``.

    Args:
        task_id: Orchestrator-assigned id.
        media_type: Selects ImageTask, VideoTask or AudioTask.
        prompt: Generation prompt.
        model: Model id.
        **details: Variant-specific descriptive fields (reference_url,
            duration_seconds, lyrics). Unknown keys raise ValidationError.

    Returns:
        Task in pending status with progress 0.
    """
    task_class = TASK_CLASSES[MediaType(media_type)]
    return task_class(task_id=task_id, prompt=prompt, model=model, **details)


class GenerationRequest(BaseModel):
    """Schema for starting a generation (POST /api/v1/generations)."""

    prompt: str = Field(..., description="Generation prompt", examples=["a red cube"])
    type: MediaType = Field(..., description="Media type to generate")
    model: str = Field(..., description="Model id", examples=["ideogram-v2"])
    params: dict[str, str | int | float | bool] = Field(
        default_factory=dict,
        description="Provider parameters forwarded to the edge function",
    )
    reference_url: str | None = Field(default=None)


class CancelResponse(BaseModel):
    """Schema for POST /api/v1/generations/cancel responses."""

    canceled: bool
    task_id: str | None = None
