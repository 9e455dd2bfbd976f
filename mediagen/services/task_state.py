"""In-memory task state store for media generation.

The store owns every GenerationTask of an orchestrator session, keyed by
task id, plus a "current task" pointer (an id into the map, never a copy).

Policies:
    - register_task overwrites an existing entry with the same id (logged)
    - update_task on an unknown id raises UnknownTaskError
    - update_task with a sequence stamp older than the last applied one for
      that task is ignored, so a late-resolving poll cannot overwrite a
      newer completion or cancellation
    - status changes follow VALID_TRANSITIONS

Concurrency:
    Accessed from a single event loop only. Every method is synchronous, so
    each mutation is atomic with respect to other coroutines.
"""

import itertools
from collections.abc import Mapping
from types import MappingProxyType

from mediagen.exceptions import UnknownTaskError
from mediagen.schemas.task import (
    GenerationTaskBase,
    TaskUpdate,
    generation_task_adapter,
    validate_transition,
)
from mediagen.utils.logging import get_logger

log = get_logger(__name__)


class TaskStateStore:
    """Keyed map of generation tasks with a current-task pointer.

    Example:
        >>> store = TaskStateStore()
        >>> store.register_task(task.task_id, task)
        >>> store.update_task(task.task_id, TaskUpdate(status=TaskStatus.PROCESSING))
        True
        >>> store.current_task.status
        <TaskStatus.PROCESSING: 'processing'>
    """

    def __init__(self) -> None:
        self._tasks: dict[str, GenerationTaskBase] = {}
        self._applied: dict[str, int] = {}
        self._current_task_id: str | None = None
        self._sequence = itertools.count(1)

    @property
    def tasks(self) -> Mapping[str, GenerationTaskBase]:
        """Read-only view of all tasks."""
        return MappingProxyType(self._tasks)

    @property
    def current_task_id(self) -> str | None:
        return self._current_task_id

    @property
    def current_task(self) -> GenerationTaskBase | None:
        """Task the current-task pointer refers to, or None."""
        if self._current_task_id is None:
            return None
        return self._tasks.get(self._current_task_id)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def next_sequence(self) -> int:
        """Issue a sequence stamp.

        Take the stamp when an update is initiated (before awaiting the
        provider), then pass it to update_task once the result is known.
        """
        return next(self._sequence)

    def get_task(self, task_id: str) -> GenerationTaskBase | None:
        return self._tasks.get(task_id)

    def register_task(self, task_id: str, task: GenerationTaskBase) -> None:
        """Insert or overwrite a task and make it the current task.

        Args:
            task_id: Key to store the task under.
            task: Initial task record; ``task.task_id`` must equal ``task_id``.

        Raises:
            ValueError: If task_id does not match the record.
        """
        if task.task_id != task_id:
            raise ValueError(f"task_id mismatch: {task_id} != {task.task_id}")

        if task_id in self._tasks:
            log.warning("task_overwritten", task_id=task_id)

        self._tasks[task_id] = task
        self._applied[task_id] = self.next_sequence()
        self._current_task_id = task_id

    def update_task(
        self,
        task_id: str,
        update: TaskUpdate,
        *,
        sequence: int | None = None,
    ) -> bool:
        """Merge a partial update into a stored task.

        Args:
            task_id: Task to update.
            update: Fields to merge (only fields set on the update are applied).
            sequence: Stamp from next_sequence(). When given and older than
                the last applied stamp for this task, the update is dropped.
                When omitted a fresh stamp is taken.

        Returns:
            True if applied, False if dropped as stale.

        Raises:
            UnknownTaskError: If the task id is not in the store.
            InvalidStateTransitionError: If the status change is not allowed.
            pydantic.ValidationError: If the merged record breaks task invariants.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)

        if sequence is None:
            sequence = self.next_sequence()
        last_applied = self._applied.get(task_id, 0)
        if sequence < last_applied:
            log.debug(
                "stale_task_update_ignored",
                task_id=task_id,
                sequence=sequence,
                last_applied=last_applied,
            )
            return False

        changes = update.changes()
        new_status = changes.get("status")
        if new_status is not None:
            validate_transition(task.status, new_status)

        # The dumped record carries its "type" tag, so the union picks the variant
        merged = generation_task_adapter.validate_python({**task.model_dump(), **changes})
        self._tasks[task_id] = merged
        self._applied[task_id] = sequence
        return True

    def remove_task(self, task_id: str) -> GenerationTaskBase | None:
        """Drop one task; clears the current pointer if it referred to it."""
        task = self._tasks.pop(task_id, None)
        self._applied.pop(task_id, None)
        if self._current_task_id == task_id:
            self._current_task_id = None
        return task

    def clear_tasks(self) -> None:
        """Empty the store and clear the current-task pointer."""
        self._tasks.clear()
        self._applied.clear()
        self._current_task_id = None
