"""Provider adapter boundary.

The orchestrator and circuit breaker are transport-agnostic: they talk to a
ProviderAdapter, which turns ``invoke(service_name, payload)`` into a
ProviderResponse or raises. EdgeFunctionAdapter is the production adapter,
backed by EdgeFunctionClient.

Response normalization helpers live here as well, because vendors disagree
on field names (mediaUrl vs media_url vs images[0], taskId vs task_id).
"""

from typing import Any, Protocol

from pydantic import BaseModel, Field

from mediagen.clients.edge_functions import EdgeFunctionClient


class ProviderResponse(BaseModel):
    """Normalized result of a provider call.

    Attributes:
        success: Whether the provider accepted/fulfilled the request.
        data: Raw response body.
        error: Provider error message when success is False.
    """

    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ProviderAdapter(Protocol):
    """Boundary object translating a request into a vendor call."""

    async def invoke(self, service_name: str, payload: dict[str, Any]) -> ProviderResponse: ...


class EdgeFunctionAdapter:
    """ProviderAdapter that calls backend edge functions.

    A body with an explicit ``success`` flag is taken at its word; otherwise
    the presence of an ``error`` field marks the call unsuccessful.
    """

    def __init__(self, client: EdgeFunctionClient):
        self.client = client

    async def invoke(self, service_name: str, payload: dict[str, Any]) -> ProviderResponse:
        body = await self.client.invoke(service_name, payload)
        error = body.get("error")
        if "success" in body:
            success = bool(body["success"])
        else:
            success = not error
        return ProviderResponse(
            success=success,
            data=body,
            error=str(error) if error else None,
        )

    async def close(self) -> None:
        await self.client.close()


def extract_media_url(data: dict[str, Any]) -> str | None:
    """Find the result URL in a provider body.

    Checks ``mediaUrl``, ``media_url``, ``url``, then the first entry of
    ``images`` and the ``audio_url`` of the first entry of ``songs``.
    """
    for key in ("mediaUrl", "media_url", "url"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value

    images = data.get("images")
    if isinstance(images, list) and images and isinstance(images[0], str):
        return images[0]

    songs = data.get("songs")
    if isinstance(songs, list) and songs and isinstance(songs[0], dict):
        audio_url = songs[0].get("audio_url")
        if isinstance(audio_url, str) and audio_url:
            return audio_url

    return None


def extract_provider_task_id(data: dict[str, Any]) -> str | None:
    """Find the upstream task id in a provider body (taskId or task_id)."""
    for key in ("taskId", "task_id"):
        value = data.get(key)
        if value:
            return str(value)
    return None


def extract_percentage(data: dict[str, Any]) -> int | None:
    """Upstream-reported percentage, if the vendor sends one."""
    value = data.get("percentage")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return max(0, min(100, int(value)))
    return None
