"""Anthropic (Claude) provider adapter."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from promptchain.config import ANTHROPIC_API_KEY
from promptchain.errors import TransportError
from promptchain.models import ModelResponse, TokenUsage
from promptchain.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class AnthropicAdapter(ProviderAdapter):
    def __init__(self, model: str = "claude-sonnet-4-5-20250929"):
        self.model = model
        self.client = anthropic.AsyncAnthropic(api_key=ANTHROPIC_API_KEY)

    async def generate(
        self,
        messages: list[dict],
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        timeout: float | None = None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._format_messages(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if timeout:
            kwargs["timeout"] = timeout

        try:
            raw = await self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise TransportError(f"Anthropic API error: {e}") from e

        return self._parse_response(raw)

    def _format_messages(self, messages: list[dict]) -> list[dict]:
        formatted = []
        for msg in messages:
            role = msg.get("role", "user")
            if role == "system":
                continue  # system messages go via the system parameter
            formatted.append({
                "role": "assistant" if role == "assistant" else "user",
                "content": str(msg.get("content", "")),
            })
        return formatted

    def _parse_response(self, raw: Any) -> ModelResponse:
        text_parts = [block.text for block in raw.content if block.type == "text"]
        return ModelResponse(
            text="\n".join(text_parts) if text_parts else None,
            usage=TokenUsage(raw.usage.input_tokens, raw.usage.output_tokens),
            raw=raw,
        )
