"""Suggestion generation collaborator.

Preview and draft runs ask a ``SuggestionGenerator`` for one field value per
product. The default implementation goes through an LLM adapter.
"""

from __future__ import annotations

import logging
from typing import Protocol

from playbook_engine.config import Settings, get_settings
from playbook_engine.database.models import Product
from playbook_engine.errors import ProviderError
from playbook_engine.llm.base import LLMAdapter, LLMMessage
from playbook_engine.llm.deepseek import DeepSeekAdapter
from playbook_engine.playbooks.prompts import SYSTEM_PROMPT, format_field_prompt
from playbook_engine.playbooks.scope import PLAYBOOK_FIELDS
from playbook_engine.schemas import PlaybookId


logger = logging.getLogger(__name__)


class SuggestionGenerator(Protocol):
    async def suggest(self, product: Product, playbook_id: PlaybookId) -> str | None:
        """Return a value for the playbook's field, or None when nothing usable came back."""
        ...


class LLMSuggestionGenerator:
    """Generates SEO copy with a chat-completion model.

    Without an explicit adapter, a DeepSeek adapter is created on first use so
    a missing API key only fails the runs that actually need generation.
    """

    def __init__(
        self,
        adapter: LLMAdapter | None = None,
        settings: Settings | None = None,
        temperature: float = 0.4,
    ):
        self._adapter = adapter
        self.settings = settings or get_settings()
        self.temperature = temperature

    @property
    def adapter(self) -> LLMAdapter:
        if self._adapter is None:
            try:
                self._adapter = DeepSeekAdapter(self.settings)
            except ValueError as e:
                raise ProviderError(str(e), provider="deepseek") from e
        return self._adapter

    async def suggest(self, product: Product, playbook_id: PlaybookId) -> str | None:
        adapter = self.adapter
        field = PLAYBOOK_FIELDS[playbook_id]
        messages = [
            LLMMessage(role="system", content=SYSTEM_PROMPT),
            LLMMessage(role="user", content=format_field_prompt(field, product.title, product.description)),
        ]

        response = await adapter.chat_completion(messages=messages, temperature=self.temperature)

        if response.finish_reason == "error":
            raise ProviderError(
                f"{adapter.provider_name} failed to generate a suggestion: {response.error}",
                provider=adapter.provider_name,
                providerStatus=response.status_code,
            )

        content = (response.content or "").strip().strip('"').strip()
        if not content:
            logger.warning(f"Empty suggestion for product {product.id} ({playbook_id.value})")
            return None
        return content

    async def close(self) -> None:
        if self._adapter is not None:
            await self._adapter.close()
