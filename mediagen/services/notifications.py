"""User-facing notices.

The orchestrator reports start, success, failure and cancellation through
a Notifier. LoggingNotifier writes notices to the log; RecordingNotifier
keeps the most recent notices in memory so the HTTP layer can return them.
"""

import enum
from collections import deque
from dataclasses import dataclass
from typing import Protocol

from mediagen.utils.logging import get_logger

log = get_logger(__name__)


class NoticeLevel(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    level: NoticeLevel
    message: str
    description: str | None = None


class Notifier(Protocol):
    """Receives user-facing notices."""

    def notify(self, notice: Notice) -> None: ...


class LoggingNotifier:
    """Notifier that logs each notice."""

    def notify(self, notice: Notice) -> None:
        log_method = log.warning if notice.level in (NoticeLevel.WARNING, NoticeLevel.ERROR) else log.info
        log_method(
            "user_notice",
            level=notice.level.value,
            message=notice.message,
            description=notice.description,
        )


class RecordingNotifier(LoggingNotifier):
    """Notifier that logs and keeps the last ``max_notices`` notices."""

    def __init__(self, max_notices: int = 50):
        self.notices: deque[Notice] = deque(maxlen=max_notices)

    def notify(self, notice: Notice) -> None:
        super().notify(notice)
        self.notices.append(notice)
