"""OpenAI (GPT-4, o3) provider adapter."""

from __future__ import annotations

import logging
from typing import Any

import openai

from promptchain.config import OPENAI_API_KEY
from promptchain.errors import TransportError
from promptchain.models import ModelResponse, TokenUsage
from promptchain.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)


class OpenAIAdapter(ProviderAdapter):
    def __init__(self, model: str = "gpt-4o"):
        self.model = model
        self.client = openai.AsyncOpenAI(api_key=OPENAI_API_KEY)

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
            "messages": self._format_messages(messages, system),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if timeout:
            kwargs["timeout"] = timeout

        try:
            raw = await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            raise TransportError(f"OpenAI API error: {e}") from e

        return self._parse_response(raw)

    def _format_messages(self, messages: list[dict], system: str | None = None) -> list[dict]:
        formatted = []
        if system:
            formatted.append({"role": "system", "content": system})
        for msg in messages:
            role = msg.get("role", "user")
            if role not in ("system", "assistant"):
                role = "user"
            formatted.append({"role": role, "content": str(msg.get("content", ""))})
        return formatted

    def _parse_response(self, raw: Any) -> ModelResponse:
        if not raw.choices:
            return ModelResponse(text=None, raw=raw)
        usage = TokenUsage()
        if raw.usage:
            usage = TokenUsage(raw.usage.prompt_tokens, raw.usage.completion_tokens)
        return ModelResponse(text=raw.choices[0].message.content, usage=usage, raw=raw)
