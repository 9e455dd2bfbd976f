"""Configuration management for the media generation layer.

This module provides centralized configuration loading from environment variables.
Required values are cached after the first successful read.

Environment Variables:
    SUPABASE_URL: Backend base URL hosting the edge functions (required for the service)
    SUPABASE_ANON_KEY: API key sent with edge function and REST calls (required)
    BREAKER_FAILURE_THRESHOLD: Consecutive failures before a breaker opens (optional)
    BREAKER_RESET_TIMEOUT_MS: Cooldown before a half-open trial (optional)
    POLL_INTERVAL_SECONDS: Status polling interval for async providers (optional)
    GENERATION_TIMEOUT_SECONDS: Upper bound on a polled generation (optional)
    TELEMETRY_*: Telemetry switches (optional)
    LOG_LEVEL: Level for service loggers (optional, default INFO)

Usage:
    from mediagen.config import get_supabase_url, get_poll_interval_seconds

    base_url = get_supabase_url()  # Raises if SUPABASE_URL not set
    interval = get_poll_interval_seconds()  # Clamped to 1..60
"""

import os
from functools import lru_cache

import structlog

from mediagen.exceptions import ConfigurationError

log = structlog.get_logger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT_MS = 30_000
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_GENERATION_TIMEOUT_SECONDS = 600.0  # 10 minutes, long video renders
DEFAULT_EDGE_FUNCTION_RATE = 5

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    log.warning("invalid_boolean_setting", name=name, value=raw, using_default=default)
    return default


@lru_cache
def get_supabase_url() -> str:
    """Get backend base URL from environment.

    Trailing slashes are stripped so callers can append paths directly.

    Environment Variable:
        SUPABASE_URL: Backend project URL (e.g., "https://abc.supabase.co")

    Returns:
        Base URL without trailing slash.

    Raises:
        ConfigurationError: If SUPABASE_URL not set.
    """
    url = os.getenv("SUPABASE_URL")
    if not url:
        raise ConfigurationError("SUPABASE_URL environment variable is required")
    return url.rstrip("/")


@lru_cache
def get_supabase_key() -> str:
    """Get backend API key from environment.

    Environment Variable:
        SUPABASE_ANON_KEY: Public API key for edge functions and REST inserts

    Returns:
        API key string.

    Raises:
        ConfigurationError: If SUPABASE_ANON_KEY not set.
    """
    key = os.getenv("SUPABASE_ANON_KEY")
    if not key:
        raise ConfigurationError("SUPABASE_ANON_KEY environment variable is required")
    return key


def is_backend_configured() -> bool:
    """Return True when both backend URL and key are present."""
    return bool(os.getenv("SUPABASE_URL")) and bool(os.getenv("SUPABASE_ANON_KEY"))


def get_breaker_failure_threshold() -> int:
    """Get circuit breaker failure threshold from environment.

    Environment Variable:
        BREAKER_FAILURE_THRESHOLD: Consecutive failures before opening (default: 3)

    Returns:
        Threshold (minimum 1).
    """
    try:
        threshold = int(os.getenv("BREAKER_FAILURE_THRESHOLD", str(DEFAULT_FAILURE_THRESHOLD)))
        return max(1, threshold)
    except ValueError:
        log.warning(
            "invalid_breaker_threshold",
            value=os.getenv("BREAKER_FAILURE_THRESHOLD"),
            using_default=DEFAULT_FAILURE_THRESHOLD,
        )
        return DEFAULT_FAILURE_THRESHOLD


def get_breaker_reset_timeout_ms() -> int:
    """Get circuit breaker cooldown in milliseconds from environment.

    Environment Variable:
        BREAKER_RESET_TIMEOUT_MS: Cooldown while OPEN (default: 30000)

    Returns:
        Cooldown in milliseconds (minimum 0).
    """
    try:
        timeout = int(os.getenv("BREAKER_RESET_TIMEOUT_MS", str(DEFAULT_RESET_TIMEOUT_MS)))
        return max(0, timeout)
    except ValueError:
        log.warning(
            "invalid_breaker_reset_timeout",
            value=os.getenv("BREAKER_RESET_TIMEOUT_MS"),
            using_default=DEFAULT_RESET_TIMEOUT_MS,
        )
        return DEFAULT_RESET_TIMEOUT_MS


def get_poll_interval_seconds() -> float:
    """Get status polling interval in seconds from environment.

    Environment Variable:
        POLL_INTERVAL_SECONDS: Polling interval (default: 3)

    Returns:
        Interval in seconds (minimum 1, maximum 60).

    Note:
        Clamps value between 1 second (avoid hammering the status function)
        and 60 seconds (progress bar must still move).
    """
    try:
        interval = float(os.getenv("POLL_INTERVAL_SECONDS", str(DEFAULT_POLL_INTERVAL_SECONDS)))
        return max(1.0, min(60.0, interval))
    except ValueError:
        log.warning(
            "invalid_poll_interval",
            value=os.getenv("POLL_INTERVAL_SECONDS"),
            using_default=DEFAULT_POLL_INTERVAL_SECONDS,
        )
        return DEFAULT_POLL_INTERVAL_SECONDS


def get_generation_timeout_seconds() -> float:
    """Get upper bound for a polled generation from environment.

    Environment Variable:
        GENERATION_TIMEOUT_SECONDS: Timeout for polled providers (default: 600)

    Returns:
        Timeout in seconds (minimum 30).
    """
    try:
        timeout = float(
            os.getenv("GENERATION_TIMEOUT_SECONDS", str(DEFAULT_GENERATION_TIMEOUT_SECONDS))
        )
        return max(30.0, timeout)
    except ValueError:
        log.warning(
            "invalid_generation_timeout",
            value=os.getenv("GENERATION_TIMEOUT_SECONDS"),
            using_default=DEFAULT_GENERATION_TIMEOUT_SECONDS,
        )
        return DEFAULT_GENERATION_TIMEOUT_SECONDS


def get_edge_function_rate() -> int:
    """Get max edge function requests per second from environment.

    Environment Variable:
        EDGE_FUNCTION_RATE_PER_SECOND: Outbound request rate (default: 5)

    Returns:
        Requests per second (minimum 1).
    """
    try:
        rate = int(os.getenv("EDGE_FUNCTION_RATE_PER_SECOND", str(DEFAULT_EDGE_FUNCTION_RATE)))
        return max(1, rate)
    except ValueError:
        log.warning(
            "invalid_edge_function_rate",
            value=os.getenv("EDGE_FUNCTION_RATE_PER_SECOND"),
            using_default=DEFAULT_EDGE_FUNCTION_RATE,
        )
        return DEFAULT_EDGE_FUNCTION_RATE


def get_telemetry_sink_kind() -> str:
    """Get telemetry sink kind ("log" or "rest") from environment.

    Environment Variable:
        TELEMETRY_SINK: "log" writes events to the logger, "rest" inserts them
        into the media_analytics table (default: "log")

    Returns:
        Sink kind string.
    """
    kind = os.getenv("TELEMETRY_SINK", "log").strip().lower()
    if kind not in ("log", "rest"):
        log.warning("invalid_telemetry_sink", value=kind, using_default="log")
        return "log"
    return kind


def get_telemetry_enabled() -> bool:
    """TELEMETRY_ENABLED (default: true)."""
    return _get_bool("TELEMETRY_ENABLED", True)


def get_telemetry_anonymous() -> bool:
    """TELEMETRY_ANONYMOUS (default: true). When on, user ids are not recorded."""
    return _get_bool("TELEMETRY_ANONYMOUS", True)


def get_telemetry_performance_metrics() -> bool:
    """TELEMETRY_PERFORMANCE_METRICS (default: true)."""
    return _get_bool("TELEMETRY_PERFORMANCE_METRICS", True)


def get_telemetry_error_reporting() -> bool:
    """TELEMETRY_ERROR_REPORTING (default: true)."""
    return _get_bool("TELEMETRY_ERROR_REPORTING", True)


def get_log_level() -> str:
    """Get the level for mediagen service loggers from environment.

    Environment Variable:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR (default: INFO)

    Returns:
        Level name accepted by logging.Logger.setLevel().
    """
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        log.warning("invalid_log_level", value=level, using_default="INFO")
        return "INFO"
    return level
