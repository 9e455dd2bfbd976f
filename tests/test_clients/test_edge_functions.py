"""Tests for EdgeFunctionClient.

Test Coverage:
- Successful invocation (URL, headers, JSON body)
- Error responses become EdgeFunctionError with the function's message
- Retriable classification (429, 5xx)
- Non-JSON and non-object bodies
- Network errors propagate
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from mediagen.clients.edge_functions import EdgeFunctionClient, EdgeFunctionError


class TestEdgeFunctionClient:
    """Test suite for EdgeFunctionClient."""

    @pytest.fixture
    def client(self):
        return EdgeFunctionClient("https://abc.supabase.co/", "anon-key", max_rate=100)

    def test_base_url_points_at_functions(self, client):
        assert client.base_url == "https://abc.supabase.co/functions/v1"

    @pytest.mark.asyncio
    async def test_invoke_success(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json={"mediaUrl": "https://cdn/x.png"})

            body = await client.invoke("ideogram-imagine", {"prompt": "a red cube"})

            assert body == {"mediaUrl": "https://cdn/x.png"}
            args, kwargs = mock_post.call_args
            assert args[0] == "https://abc.supabase.co/functions/v1/ideogram-imagine"
            assert kwargs["json"] == {"prompt": "a red cube"}
            assert kwargs["headers"]["Authorization"] == "Bearer anon-key"
            assert kwargs["headers"]["apikey"] == "anon-key"

    @pytest.mark.asyncio
    async def test_error_body_message_used(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(400, json={"error": "Prompt rejected"})

            with pytest.raises(EdgeFunctionError) as exc_info:
                await client.invoke("ideogram-imagine", {"prompt": "x"})

        error = exc_info.value
        assert str(error) == "Prompt rejected"
        assert error.function_name == "ideogram-imagine"
        assert error.status_code == 400
        assert error.is_retriable is False

    @pytest.mark.asyncio
    async def test_error_without_body_message(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(502, text="<html>Bad Gateway</html>")

            with pytest.raises(EdgeFunctionError) as exc_info:
                await client.invoke("apiframe-task-status", {"taskId": "t-1"})

        assert str(exc_info.value) == "apiframe-task-status returned 502"
        assert exc_info.value.is_retriable is True
        assert "Bad Gateway" in exc_info.value.response_body

    @pytest.mark.asyncio
    async def test_rate_limited_is_retriable(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(429, json={"message": "slow down"})

            with pytest.raises(EdgeFunctionError) as exc_info:
                await client.invoke("apiframe-task-status", {"taskId": "t-1"})

        assert exc_info.value.is_retriable is True
        assert str(exc_info.value) == "slow down"

    @pytest.mark.asyncio
    async def test_non_json_body(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, text="ok")

            with pytest.raises(EdgeFunctionError, match="non-JSON"):
                await client.invoke("ideogram-imagine", {})

    @pytest.mark.asyncio
    async def test_non_object_body_wrapped(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.return_value = httpx.Response(200, json=["https://cdn/x.png"])

            body = await client.invoke("ideogram-imagine", {})

        assert body == {"data": ["https://cdn/x.png"]}

    @pytest.mark.asyncio
    async def test_network_error_propagates(self, client):
        with patch.object(client.client, "post", new_callable=AsyncMock) as mock_post:
            mock_post.side_effect = httpx.ConnectError("Connection failed")

            with pytest.raises(httpx.ConnectError):
                await client.invoke("ideogram-imagine", {})

    @pytest.mark.asyncio
    async def test_close(self, client):
        await client.close()

        assert client.client.is_closed
