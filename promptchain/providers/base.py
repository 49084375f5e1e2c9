"""Base capability contract and provider adapter interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from promptchain.errors import MalformedResponseError
from promptchain.models import Generation, ModelResponse

logger = logging.getLogger(__name__)


class Capability(ABC):
    """A text-generation service: prompt in, Generation out.

    Implementations raise TransportError (or any exception) on failure;
    the execution queue owns retry and timeout handling.
    """

    @abstractmethod
    async def generate(self, prompt: str, capability_id: str, timeout: float) -> Generation:
        ...


class ProviderAdapter(ABC):
    """Translates a single-turn request into a provider-specific API call."""

    model: str

    @abstractmethod
    async def generate(
        self,
        messages: list[dict],
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        timeout: float | None = None,
    ) -> ModelResponse:
        """Call the model and return a unified ModelResponse."""


class ProviderCapability(Capability):
    """Routes `provider/model` capability ids to cached provider adapters."""

    def __init__(
        self,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ):
        self.system = system
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._adapters: dict[str, ProviderAdapter] = {}

    def adapter_for(self, capability_id: str) -> ProviderAdapter:
        if capability_id not in self._adapters:
            from promptchain.providers.factory import create_adapter
            self._adapters[capability_id] = create_adapter(capability_id)
        return self._adapters[capability_id]

    async def generate(self, prompt: str, capability_id: str, timeout: float) -> Generation:
        adapter = self.adapter_for(capability_id)
        response = await adapter.generate(
            messages=[{"role": "user", "content": prompt}],
            system=self.system,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=timeout,
        )
        if not response.text:
            raise MalformedResponseError(f"{capability_id} returned an empty response")
        return Generation(
            text=response.text,
            capability_name=capability_id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
