"""DeskPilot – LLM Client Tests.

Tests: OpenAI-compatible and Gemini calls, error mapping to LLMError,
unconfigured client, connection probe.
"""

from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.ai.llm import LLMClient, LLMError, LLMNotConfigured

MOCK_OPENAI_RESPONSE = {
    "choices": [{"message": {"content": "  Your parcel ships tomorrow.  "}}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 5},
}

MOCK_GEMINI_RESPONSE = {
    "candidates": [{"content": {"parts": [{"text": "OK"}]}}],
}


def _response(status_code: int = 200, payload: dict | None = None, text: str = "") -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.text = text
    mock_response.json.return_value = payload if payload is not None else {}
    return mock_response


@contextmanager
def _mock_http(**post_kwargs):
    with patch("httpx.AsyncClient") as mock_client_cls:
        mock_client = AsyncMock()
        mock_client.post = AsyncMock(**post_kwargs)
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_cls.return_value = mock_client
        yield mock_client


class TestLLMOpenAI:
    """Tests for the OpenAI-compatible path."""

    @pytest.mark.anyio
    async def test_chat_success(self) -> None:
        llm = LLMClient(api_key="test-key-123")

        with _mock_http(return_value=_response(payload=MOCK_OPENAI_RESPONSE)) as client:
            result = await llm.chat([{"role": "user", "content": "When does it ship?"}])

        assert result == "Your parcel ships tomorrow."
        url = client.post.await_args.args[0]
        assert url == "https://api.openai.com/v1/chat/completions"
        kwargs = client.post.await_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer test-key-123"
        assert kwargs["json"]["model"] == "gpt-4o-mini"

    @pytest.mark.anyio
    async def test_custom_base_url_and_overrides(self) -> None:
        llm = LLMClient(api_key="k", base_url="https://api.mistral.ai/v1/", model="mistral-small")

        with _mock_http(return_value=_response(payload=MOCK_OPENAI_RESPONSE)) as client:
            await llm.ask("hi", system_prompt="Be brief.", temperature=0.0, max_tokens=5)

        assert client.post.await_args.args[0] == "https://api.mistral.ai/v1/chat/completions"
        body = client.post.await_args.kwargs["json"]
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert body["temperature"] == 0.0
        assert body["max_tokens"] == 5

    @pytest.mark.anyio
    async def test_non_200_raises(self) -> None:
        llm = LLMClient(api_key="k")
        failing = _response(status_code=429, payload={"error": {"message": "rate limited"}})
        with _mock_http(return_value=failing):
            with pytest.raises(LLMError, match="429"):
                await llm.chat([{"role": "user", "content": "test"}])

    @pytest.mark.anyio
    async def test_transport_error_raises(self) -> None:
        llm = LLMClient(api_key="k")
        with _mock_http(side_effect=httpx.ConnectError("refused")):
            with pytest.raises(LLMError, match="connection failed"):
                await llm.chat([{"role": "user", "content": "test"}])

    @pytest.mark.anyio
    async def test_unexpected_shape_raises(self) -> None:
        llm = LLMClient(api_key="k")
        with _mock_http(return_value=_response(payload={"choices": []})):
            with pytest.raises(LLMError, match="unexpected"):
                await llm.chat([{"role": "user", "content": "test"}])

    @pytest.mark.anyio
    async def test_empty_completion_raises(self) -> None:
        llm = LLMClient(api_key="k")
        with _mock_http(return_value=_response(payload={"choices": [{"message": {"content": "   "}}]})):
            with pytest.raises(LLMError, match="empty"):
                await llm.chat([{"role": "user", "content": "test"}])


class TestLLMGemini:

    @pytest.mark.anyio
    async def test_gemini_payload_and_reply(self) -> None:
        llm = LLMClient(provider="gemini", api_key="g-key")

        with _mock_http(return_value=_response(payload=MOCK_GEMINI_RESPONSE)) as client:
            result = await llm.ask("ping", system_prompt="You are terse.")

        assert result == "OK"
        url = client.post.await_args.args[0]
        assert url.endswith("/models/gemini-1.5-flash:generateContent?key=g-key")
        body = client.post.await_args.kwargs["json"]
        assert body["systemInstruction"] == {"parts": [{"text": "You are terse."}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "ping"}]}]


class TestLLMConfiguration:

    @pytest.mark.anyio
    async def test_missing_key_raises_without_request(self) -> None:
        llm = LLMClient(api_key="")
        assert llm.configured is False
        with _mock_http() as client:
            with pytest.raises(LLMNotConfigured):
                await llm.chat([{"role": "user", "content": "test"}])
        client.post.assert_not_awaited()

    @pytest.mark.anyio
    async def test_ping_true_on_ok(self) -> None:
        llm = LLMClient(provider="gemini", api_key="g-key")
        with _mock_http(return_value=_response(payload=MOCK_GEMINI_RESPONSE)):
            assert await llm.ping() is True

    @pytest.mark.anyio
    async def test_ping_false_on_failure(self) -> None:
        llm = LLMClient(api_key="k")
        with _mock_http(return_value=_response(status_code=401, text="unauthorized")):
            assert await llm.ping() is False
