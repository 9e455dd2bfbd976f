"""Cross-cutting utilities for the media generation layer.

Utilities should be pure functions or small wrappers without business logic.

Modules:
    logging: JSON-structured logger with context binding.
"""

from mediagen.utils.logging import StructuredLogger, get_logger

__all__ = [
    "StructuredLogger",
    "get_logger",
]
