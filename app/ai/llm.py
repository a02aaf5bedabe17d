"""DeskPilot – LLM Client.

Thin text-generation collaborator over httpx. Supports OpenAI-compatible
chat completion APIs (OpenAI, Mistral, Groq, xAI, ...) and Google Gemini.

Unlike a best-effort chat helper, every failure raises `LLMError`: the
callers (escalation classifier, response generator) own the fallback.
"""

import time
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}
DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "gemini": "gemini-1.5-flash",
}


class LLMError(RuntimeError):
    """The provider could not produce a completion."""


class LLMNotConfigured(LLMError):
    """No API key is configured."""


class LLMClient:
    """Async chat-completion client for one configured provider."""

    def __init__(
        self,
        provider: str = "openai",
        api_key: str = "",
        base_url: str = "",
        model: str = "",
        timeout: float = 8.0,
        max_tokens: int = 400,
        temperature: float = 0.3,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self._api_key = api_key
        self._base_url = (base_url or DEFAULT_BASE_URLS.get(self.provider, DEFAULT_BASE_URLS["openai"])).rstrip("/")
        self.model = model or DEFAULT_MODELS.get(self.provider, DEFAULT_MODELS["openai"])
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def is_gemini(self) -> bool:
        return self.provider == "gemini" or "generativelanguage" in self._base_url

    async def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Execute a chat completion and return the reply text.

        Raises:
            LLMNotConfigured: No API key.
            LLMError: Transport error, non-2xx status or an unexpected response shape.
        """
        if not self._api_key:
            raise LLMNotConfigured(f"API key for provider {self.provider} missing")

        temperature = self._temperature if temperature is None else temperature
        max_tokens = self._max_tokens if max_tokens is None else max_tokens
        start_time = time.time()

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                if self.is_gemini:
                    resp = await client.post(
                        f"{self._base_url}/models/{self.model}:generateContent?key={self._api_key}",
                        json=self._gemini_payload(messages, temperature, max_tokens),
                    )
                else:
                    resp = await client.post(
                        f"{self._base_url}/chat/completions",
                        headers={"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"},
                        json={
                            "model": self.model,
                            "messages": messages,
                            "temperature": temperature,
                            "max_tokens": max_tokens,
                        },
                    )
        except httpx.HTTPError as exc:
            logger.error("llm.request_failed", provider=self.provider, error=str(exc))
            raise LLMError(f"LLM connection failed: {exc}") from exc

        if resp.status_code != 200:
            detail = self._error_detail(resp)
            logger.error("llm.provider_error", provider=self.provider, status=resp.status_code, detail=detail[:200])
            raise LLMError(f"LLM error ({resp.status_code})")

        try:
            data = resp.json()
            if self.is_gemini:
                content = data["candidates"][0]["content"]["parts"][0]["text"]
            else:
                content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("llm.malformed_response", provider=self.provider, error=str(exc))
            raise LLMError("LLM returned an unexpected response shape") from exc

        if not isinstance(content, str) or not content.strip():
            raise LLMError("LLM returned an empty completion")

        logger.info(
            "llm.success",
            provider=self.provider,
            model=self.model,
            latency_ms=round((time.time() - start_time) * 1000),
        )
        return content.strip()

    async def ask(self, prompt: str, system_prompt: str | None = None, **kwargs: Any) -> str:
        """Simple helper for single-turn questions."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self.chat(messages, **kwargs)

    async def ping(self) -> bool:
        """Connection probe: True if the provider answers a trivial prompt."""
        try:
            reply = await self.ask("Reply with just 'OK' if you can see this.", max_tokens=10)
        except LLMError as exc:
            logger.warning("llm.probe_failed", provider=self.provider, error=str(exc))
            return False
        return "OK" in reply

    @staticmethod
    def _gemini_payload(messages: list[dict[str, str]], temperature: float, max_tokens: int) -> dict[str, Any]:
        contents = []
        system_text = ""
        for m in messages:
            if m["role"] == "system":
                system_text = m["content"]
            else:
                role = "user" if m["role"] == "user" else "model"
                contents.append({"role": role, "parts": [{"text": m["content"]}]})

        payload: dict[str, Any] = {"contents": contents}
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        payload["generationConfig"] = {"temperature": temperature, "maxOutputTokens": max_tokens}
        return payload

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("error", {}).get("message", resp.text))
        except (ValueError, AttributeError):
            return resp.text
