"""Structured logging for the media generation services.

Every log line is an event name plus keyword context, so task lifecycle
transitions can be grepped by task_id, service name or event. Loggers carry
bound context: the poller binds task_id/provider_task_id once and every
status line it writes includes them.

Configuration:
- JSON message body (event + bound context + call context)
- Level from LOG_LEVEL (see mediagen.config.get_log_level)
- exception() attaches the active traceback (callback and sink failures)
"""

import json
import logging
import sys
from typing import Any

from mediagen.config import get_log_level


class StructuredLogger:
    """Event logger over a standard Logger with bound context.

    Call context overrides bound context on key clashes. Values json cannot
    encode (datetimes, exceptions) are rendered with str(); str enums are
    written as their value.

    Example:
        >>> poll_log = get_logger(__name__).bind(task_id="t-1")
        >>> poll_log.debug("generation_status_polled", status="processing")
    """

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None):
        self._logger = logger
        self._context = dict(context or {})

    @property
    def name(self) -> str:
        return self._logger.name

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that adds ``kwargs`` to every entry."""
        return StructuredLogger(self._logger, {**self._context, **kwargs})

    def _format_json(self, event: str, **kwargs: Any) -> str:
        return json.dumps({"event": event, **self._context, **kwargs}, default=str)

    def _log(self, level: int, event: str, /, exc_info: bool = False, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._format_json(event, **kwargs), exc_info=exc_info)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, **kwargs)

    def exception(self, event: str, **kwargs: Any) -> None:
        """Log at ERROR with the exception currently being handled."""
        self._log(logging.ERROR, event, exc_info=True, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a mediagen module.

    The first call for a name attaches a stdout handler and applies
    LOG_LEVEL; later calls reuse the configured logger.

    Args:
        name: Module name (typically __name__)

    Returns:
        StructuredLogger with no bound context.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(get_log_level())

    return StructuredLogger(logger)
