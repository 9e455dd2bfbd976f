"""Shared exceptions for the media generation layer.

This module contains exception classes used across multiple services
to avoid cross-domain dependencies between services.

Taxonomy:
    - InvalidGenerationRequestError: user error, rejected before any network call
    - GenerationInProgressError: concurrency conflict, rejected before any network call
    - ProviderError: the provider adapter reported an unsuccessful result
    - CircuitOpenError: upstream temporarily short-circuited, retry later
    - UnknownTaskError / InvalidStateTransitionError: task store misuse
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mediagen.schemas.task import TaskStatus


class ConfigurationError(Exception):
    """Raised when required configuration is missing.

    This error indicates a configuration problem that prevents the service
    from talking to the backend (e.g., SUPABASE_URL or SUPABASE_ANON_KEY unset).
    """

    pass


class InvalidGenerationRequestError(ValueError):
    """Raised when a generation request is rejected before any network call.

    Covers empty prompts and model/media type combinations that no
    provider route supports. No task is created.
    """

    pass


class GenerationInProgressError(Exception):
    """Raised when a generation is requested while another one is in flight.

    Attributes:
        task_id: Id of the in-flight task that blocked the request.
    """

    def __init__(self, task_id: str | None):
        self.task_id = task_id
        super().__init__("A media generation task is already in progress")


class ProviderError(Exception):
    """Raised when a provider adapter returns an unsuccessful result.

    Attributes:
        service_name: Edge function or provider name that failed.
    """

    def __init__(self, message: str, service_name: str | None = None):
        self.service_name = service_name
        super().__init__(message)


class CircuitOpenError(Exception):
    """Raised when a circuit breaker rejects a call without invoking it.

    This is a transient condition: callers should show a "try again later"
    message rather than a hard provider failure.

    Attributes:
        service_name: Upstream service guarded by the breaker.
        retry_after_seconds: Seconds until a trial call will be admitted.
    """

    def __init__(self, service_name: str, retry_after_seconds: float):
        self.service_name = service_name
        self.retry_after_seconds = max(0.0, retry_after_seconds)
        super().__init__(
            f"Circuit breaker for {service_name} is OPEN. "
            f"Operation rejected for another {self.retry_after_seconds:.1f}s"
        )

    @property
    def retry_at(self) -> datetime:
        """Wall-clock time at which a trial call will be admitted (UTC)."""
        return datetime.now(timezone.utc) + timedelta(seconds=self.retry_after_seconds)


class UnknownTaskError(KeyError):
    """Raised when updating a task id the store does not hold."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"Unknown task: {self.task_id}"


class InvalidStateTransitionError(Exception):
    """Raised when attempting an invalid state transition in the task workflow.

    Only transitions listed in VALID_TRANSITIONS (mediagen.schemas.task) are
    allowed; terminal states have no outgoing transitions.

    Attributes:
        from_status: The current TaskStatus before the attempted transition.
        to_status: The TaskStatus that was attempted but is not valid.

    Example:
        >>> store.update_task(task_id, TaskUpdate(status=TaskStatus.PROCESSING))
        InvalidStateTransitionError: Invalid transition: completed -> processing
    """

    def __init__(self, message: str, from_status: "TaskStatus", to_status: "TaskStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"
