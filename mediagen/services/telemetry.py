"""Media telemetry service with pluggable sinks.

Records structured lifecycle events (started/completed/failed/canceled) and
performance metrics for media generation.

Architecture Pattern:
    - Fire-and-forget: log_event never raises; a failing sink is logged and
      the event is dropped (returns None)
    - Option filtering: disabled telemetry, performance metrics and error
      reporting are filtered before the sink is called
    - Anonymous tracking strips the user id from stored records

Sinks:
    LoggingTelemetrySink: writes each record as a structured log line
    RestTelemetrySink: inserts each record into the media_analytics table
        through the backend REST endpoint (httpx)

Usage:
    telemetry = MediaTelemetryService(LoggingTelemetrySink())
    await telemetry.log_generation(
        TelemetryEventType.GENERATION_STARTED, MediaType.IMAGE, "ideogram-v2", task_id
    )
"""

import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from mediagen.schemas.task import MediaType
from mediagen.schemas.telemetry import TelemetryEvent, TelemetryEventType, TelemetryOptions
from mediagen.utils.logging import get_logger

log = get_logger(__name__)

MEDIA_ANALYTICS_TABLE = "media_analytics"


class TelemetrySink(Protocol):
    """Destination for telemetry records."""

    async def write(self, record: dict[str, Any]) -> None: ...


class LoggingTelemetrySink:
    """Sink that writes each record as a structured log line."""

    def __init__(self) -> None:
        self.log = get_logger("mediagen.telemetry")

    async def write(self, record: dict[str, Any]) -> None:
        self.log.info("media_telemetry_event", **record)


class RestTelemetrySink:
    """Sink that inserts records into the backend media_analytics table.

    Uses the backend's REST interface (``/rest/v1/<table>``) with the
    project API key. No retry: telemetry is best-effort.

    Attributes:
        endpoint: Full insert URL for the analytics table.
        client: Async HTTP client for making requests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = MEDIA_ANALYTICS_TABLE,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoint = f"{base_url.rstrip('/')}/rest/v1/{table}"
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=10.0)

    def _get_headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    async def write(self, record: dict[str, Any]) -> None:
        """Insert one record.

        Raises:
            httpx.HTTPStatusError: If the backend rejects the insert.
            httpx.TransportError: On network failures.
        """
        response = await self.client.post(self.endpoint, headers=self._get_headers(), json=record)
        response.raise_for_status()

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()


class MediaTelemetryService:
    """Records media generation events through a sink.

    Attributes:
        sink: Destination for records.
        options: Switches controlling which events are recorded.
    """

    def __init__(self, sink: TelemetrySink, options: TelemetryOptions | None = None):
        self.sink = sink
        self.options = options or TelemetryOptions()

    def _is_filtered(self, event: TelemetryEvent) -> bool:
        if not self.options.enabled:
            return True
        if (
            event.event_type == TelemetryEventType.PERFORMANCE_METRIC
            and not self.options.performance_metrics
        ):
            return True
        if (
            event.event_type == TelemetryEventType.GENERATION_FAILED
            and not self.options.error_reporting
        ):
            return True
        return False

    async def log_event(self, event: TelemetryEvent, user_id: str | None = None) -> str | None:
        """Record one event.

        Args:
            event: Event to record.
            user_id: Acting user; dropped when anonymous tracking is on.

        Returns:
            Generated event id, or None when the event was filtered out or
            the sink failed. Never raises for sink failures.
        """
        if self._is_filtered(event):
            return None

        event_id = str(uuid.uuid4())
        record = {
            "id": event_id,
            "event_type": event.event_type.value,
            "media_type": event.media_type.value if event.media_type else None,
            "model_id": event.model_id,
            "task_id": event.task_id,
            "user_id": None if self.options.anonymous_tracking else user_id,
            "duration": event.duration_ms,
            "details": dict(event.details),
            "metadata": {
                **event.metadata,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }

        try:
            await self.sink.write(record)
        except Exception as e:
            log.error(
                "telemetry_event_failed",
                event_type=event.event_type.value,
                task_id=event.task_id,
                error=str(e),
            )
            return None

        log.debug("telemetry_event_logged", event_type=event.event_type.value, event_id=event_id)
        return event_id

    async def log_generation(
        self,
        event_type: TelemetryEventType,
        media_type: MediaType,
        model_id: str | None,
        task_id: str,
        details: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        user_id: str | None = None,
    ) -> str | None:
        """Record a generation lifecycle event."""
        return await self.log_event(
            TelemetryEvent(
                event_type=event_type,
                media_type=media_type,
                model_id=model_id,
                task_id=task_id,
                duration_ms=duration_ms,
                details=details or {},
            ),
            user_id=user_id,
        )

    async def log_performance_metric(
        self,
        metric_name: str,
        duration_ms: float,
        media_type: MediaType | None = None,
        additional_data: dict[str, Any] | None = None,
    ) -> str | None:
        """Record a named duration."""
        return await self.log_event(
            TelemetryEvent(
                event_type=TelemetryEventType.PERFORMANCE_METRIC,
                media_type=media_type,
                duration_ms=duration_ms,
                details={"metric_name": metric_name, **(additional_data or {})},
            )
        )

    def start_measurement(
        self, name: str
    ) -> Callable[..., Awaitable[str | None]]:
        """Start timing a named operation.

        Returns:
            Async finisher ``finish(additional_data=None, media_type=None)``
            that records the elapsed time as a performance metric. When
            metrics are disabled the finisher records nothing.

        Example:
            >>> finish = telemetry.start_measurement("edge_function_call")
            >>> ...
            >>> await finish({"function": "ideogram-imagine"}, MediaType.IMAGE)
        """
        started = time.perf_counter()

        async def finish(
            additional_data: dict[str, Any] | None = None,
            media_type: MediaType | None = None,
        ) -> str | None:
            if not self.options.enabled or not self.options.performance_metrics:
                return None
            elapsed_ms = (time.perf_counter() - started) * 1000
            return await self.log_performance_metric(name, elapsed_ms, media_type, additional_data)

        return finish
