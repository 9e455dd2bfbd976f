"""Edge function client with outbound rate limiting.

The backend exposes each generation vendor (Ideogram, Midjourney, Kling,
Suno via APIframe) as a serverless edge function. This client invokes them
by name with a JSON payload and returns the decoded JSON body.

It implements:
- Outbound rate limit via AsyncLimiter (EDGE_FUNCTION_RATE_PER_SECOND)
- Error classification: 4xx/5xx bodies become EdgeFunctionError with the
  function's own error message when it sends one
- No retry: generation calls are not idempotent. Callers that poll status
  add their own retry.

Usage:
    client = EdgeFunctionClient(base_url, api_key)
    body = await client.invoke("ideogram-imagine", {"prompt": "a red cube"})
    await client.close()
"""

from typing import Any

import httpx
from aiolimiter import AsyncLimiter

from mediagen.config import DEFAULT_EDGE_FUNCTION_RATE
from mediagen.utils.logging import get_logger

log = get_logger(__name__)


class EdgeFunctionError(Exception):
    """Raised when an edge function answers with an error status.

    Attributes:
        function_name: Edge function that failed.
        status_code: HTTP status code.
        response_body: Raw response text (truncated to 500 chars).
    """

    def __init__(self, message: str, function_name: str, response: httpx.Response):
        self.message = message
        self.function_name = function_name
        self.status_code = response.status_code
        self.response_body = response.text[:500]
        super().__init__(message)

    @property
    def is_retriable(self) -> bool:
        """True for rate limits and server errors."""
        return self.status_code == 429 or self.status_code >= 500


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error") or body.get("message")
        if isinstance(error, str) and error:
            return error
    return None


class EdgeFunctionClient:
    """Client for invoking backend edge functions by name.

    Attributes:
        base_url: Functions endpoint (``{SUPABASE_URL}/functions/v1``).
        client: Async HTTP client for making requests.
        rate_limiter: Outbound request limiter (requests per second).

    Example:
        >>> client = EdgeFunctionClient("https://abc.supabase.co", "anon-key")
        >>> body = await client.invoke("apiframe-task-status", {"taskId": "t-1"})
        >>> body["status"]
        "processing"
        >>> await client.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        max_rate: int = DEFAULT_EDGE_FUNCTION_RATE,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize edge function client.

        Args:
            base_url: Backend project URL (without /functions/v1).
            api_key: Project API key.
            timeout: Per-request timeout in seconds.
            max_rate: Maximum requests per second.
            client: Optional preconfigured httpx client (tests).
        """
        self.base_url = f"{base_url.rstrip('/')}/functions/v1"
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.rate_limiter = AsyncLimiter(max_rate=max_rate, time_period=1)

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "apikey": self.api_key,
            "Content-Type": "application/json",
        }

    async def invoke(self, function_name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Invoke an edge function and return its JSON body.

        Args:
            function_name: Edge function name (e.g., "ideogram-imagine").
            payload: JSON request body.

        Returns:
            Decoded JSON object (non-object bodies are wrapped as {"data": ...}).

        Raises:
            EdgeFunctionError: On 4xx/5xx responses.
            httpx.TimeoutException: If the function does not answer in time.
            httpx.TransportError: On network failures.
        """
        async with self.rate_limiter:
            response = await self.client.post(
                f"{self.base_url}/{function_name}",
                headers=self._get_headers(),
                json=payload,
            )

        if response.status_code >= 400:
            message = _error_message(response) or f"{function_name} returned {response.status_code}"
            log.warning(
                "edge_function_error",
                function_name=function_name,
                status_code=response.status_code,
                error=message,
            )
            raise EdgeFunctionError(message, function_name, response)

        try:
            body = response.json()
        except ValueError as e:
            raise EdgeFunctionError(
                f"{function_name} returned a non-JSON body", function_name, response
            ) from e

        log.debug("edge_function_invoked", function_name=function_name)
        return body if isinstance(body, dict) else {"data": body}

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
