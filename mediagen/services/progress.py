"""Progress estimation for coarse-grained provider status.

Upstream providers report phases (pending, processing, finished) but rarely
a usable percentage. estimate_progress() turns those phases into a
monotonic progress value for display. It is a display heuristic only: the
terminal signal from the provider, not this number, decides completion.

Bands:
    pending:    +5 per tick, capped at 40 ("accepted, not yet started")
    processing: +10 per tick, kept within 50..90 (never 100 before completion)
    completed:  100
    otherwise:  unchanged (failed, canceled)
"""

from mediagen.schemas.task import TaskStatus

PENDING_STEP = 5
PENDING_CEILING = 40
PROCESSING_STEP = 10
PROCESSING_FLOOR = 50
PROCESSING_CEILING = 90


def estimate_progress(current_progress: int, status: TaskStatus | str) -> int:
    """Return the next display progress for a task.

    Args:
        current_progress: Progress currently shown (0-100).
        status: Latest task status (TaskStatus or its string value).

    Returns:
        New progress value. For pending/processing it is never lower than
        ``current_progress``; for completed it is always 100.

    Example:
        >>> estimate_progress(0, "pending")
        5
        >>> estimate_progress(10, "processing")
        50
        >>> estimate_progress(73, "failed")
        73
    """
    current = max(0, min(100, int(current_progress)))
    try:
        status = TaskStatus(status)
    except ValueError:
        return current

    if status == TaskStatus.COMPLETED:
        return 100
    if status == TaskStatus.PENDING:
        return max(current, min(PENDING_CEILING, current + PENDING_STEP))
    if status == TaskStatus.PROCESSING:
        banded = min(PROCESSING_CEILING, max(PROCESSING_FLOOR, current + PROCESSING_STEP))
        return max(current, banded)
    return current
