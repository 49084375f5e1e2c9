"""Remote generation service reached over HTTP."""

from __future__ import annotations

import logging

import httpx

from promptchain.errors import MalformedResponseError, TransportError
from promptchain.models import Generation
from promptchain.providers.base import Capability

logger = logging.getLogger(__name__)


class HttpCapability(Capability):
    """POSTs {prompt, capability_id} to `<base_url>/generate` and reads back a Generation.

    Expected response body:
        {"text": "...", "artifact": "...", "metadata": {"capability_name": ..., "input_tokens": ..., "output_tokens": ...}}
    """

    def __init__(self, base_url: str, api_key: str = "", transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._transport = transport

    async def generate(self, prompt: str, capability_id: str, timeout: float) -> Generation:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/generate",
                    json={"prompt": prompt, "capability_id": capability_id},
                    headers=headers,
                    timeout=timeout,
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.error(f"Generation service error: {e}")
            raise TransportError(f"Generation service error: {e}") from e
        except ValueError as e:
            raise MalformedResponseError(f"Generation service returned invalid JSON: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            raise MalformedResponseError("Generation service response has no text")

        meta = data.get("metadata") or {}
        return Generation(
            text=data["text"],
            artifact=data.get("artifact"),
            capability_name=meta.get("capability_name", capability_id),
            input_tokens=int(meta.get("input_tokens", 0)),
            output_tokens=int(meta.get("output_tokens", 0)),
        )
