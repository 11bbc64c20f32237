"""DeepSeek LLM adapter.

DeepSeek provides an OpenAI-compatible API at https://api.deepseek.com.
deepseek-chat is used for short SEO copy.
"""

from __future__ import annotations

import logging
import time

import httpx

from playbook_engine.config import Settings, get_settings
from playbook_engine.llm.base import LLMAdapter, LLMMessage, LLMResponse


logger = logging.getLogger(__name__)


class DeepSeekAdapter(LLMAdapter):
    """DeepSeek API adapter using the OpenAI-compatible endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or get_settings()
        self.api_key = settings.deepseek_api_key
        self.default_model = settings.deepseek_model_chat

        if not self.api_key:
            raise ValueError("DeepSeek API key not configured")

        self._client = httpx.AsyncClient(
            base_url=settings.deepseek_base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "deepseek"

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.4,
        max_tokens: int = 256,
    ) -> LLMResponse:
        """Send chat completion request to DeepSeek API."""
        model = model or self.default_model
        payload = self._build_request(messages, model, temperature, max_tokens)

        start_time = time.perf_counter()

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return LLMResponse(
                model=model,
                finish_reason="error",
                status_code=e.response.status_code,
                error=str(e),
            )
        except httpx.HTTPError as e:
            return LLMResponse(model=model, finish_reason="error", error=str(e))

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        logger.debug(f"deepseek/{model} responded in {latency_ms}ms")

        choice = data.get("choices", [{}])[0]
        message = choice.get("message", {})

        return LLMResponse(
            content=message.get("content"),
            model=data.get("model", model),
            usage=data.get("usage", {}),
            finish_reason=choice.get("finish_reason"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
