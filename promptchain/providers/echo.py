"""Offline echo capability for dry runs."""

from __future__ import annotations

from promptchain.models import Generation
from promptchain.providers.base import Capability


class EchoCapability(Capability):
    """Deterministic capability: answers every prompt with the prompt itself.

    A prompt that embeds a fenced block therefore yields that block as the
    artifact, which is enough to drive a graph end to end without a provider.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.calls: list[tuple[str, str]] = []

    async def generate(self, prompt: str, capability_id: str, timeout: float) -> Generation:
        self.calls.append((capability_id, prompt))
        text = f"{self.prefix}{prompt}"
        return Generation(
            text=text,
            capability_name="echo",
            input_tokens=len(prompt) // 4,
            output_tokens=len(text) // 4,
        )
