"""Project-wide constants and mappings.

This module contains the model routing table (which edge function serves
which model, and whether the provider answers synchronously or must be
polled) and the status mapping from upstream provider strings to the
internal TaskStatus values.
"""

from dataclasses import dataclass

from mediagen.schemas.task import MediaType, TaskStatus

TASK_STATUS_FUNCTION = "apiframe-task-status"
TASK_CANCEL_FUNCTION = "apiframe-task-cancel"


@dataclass(frozen=True)
class ModelRoute:
    """How a model is reached.

    Attributes:
        media_type: Media type the model produces.
        function_name: Edge function that starts the generation.
        polled: True when the function returns an upstream task id that must
            be polled through TASK_STATUS_FUNCTION; False when it answers with
            the media URL directly.
        cancellable: True when the vendor exposes a cancel endpoint.
    """

    media_type: MediaType
    function_name: str
    polled: bool = False
    cancellable: bool = False


MODEL_ROUTES: dict[str, ModelRoute] = {
    "ideogram-v2": ModelRoute(MediaType.IMAGE, "ideogram-imagine"),
    "midjourney": ModelRoute(
        MediaType.IMAGE, "apiframe-midjourney-imagine", polled=True, cancellable=True
    ),
    "kling": ModelRoute(MediaType.VIDEO, "apiframe-kling-video", polled=True, cancellable=True),
    "suno": ModelRoute(MediaType.AUDIO, "apiframe-suno-create-task", polled=True),
}

# Upstream status string → TaskStatus
# APIframe reports "finished"; other vendors use "completed"/"succeeded"
PROVIDER_TO_INTERNAL_STATUS: dict[str, TaskStatus] = {
    "pending": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "staged": TaskStatus.PENDING,
    "submitted": TaskStatus.PENDING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "in_progress": TaskStatus.PROCESSING,
    "finished": TaskStatus.COMPLETED,
    "completed": TaskStatus.COMPLETED,
    "succeeded": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
    "canceled": TaskStatus.CANCELED,
    "cancelled": TaskStatus.CANCELED,
}


def normalize_provider_status(raw: object) -> TaskStatus:
    """Map an upstream status value to TaskStatus.

    Unknown, missing or non-string values (a vendor sending a numeric code)
    are treated as still processing, so an unexpected vendor status never
    terminates a task on its own.
    """
    if not isinstance(raw, str) or not raw.strip():
        return TaskStatus.PROCESSING
    return PROVIDER_TO_INTERNAL_STATUS.get(raw.strip().lower(), TaskStatus.PROCESSING)
