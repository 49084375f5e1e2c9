"""Provider factory — create the right adapter or capability from a name."""

from __future__ import annotations

from promptchain.providers.base import Capability, ProviderAdapter, ProviderCapability


def parse_model_string(model: str) -> tuple[str, str]:
    """Parse 'provider/model-name' into (provider, model)."""
    if "/" in model:
        provider, model_name = model.split("/", 1)
        return provider.lower(), model_name
    # Infer provider from model name
    if model.startswith("claude"):
        return "anthropic", model
    if model.startswith("gpt") or model.startswith("o1") or model.startswith("o3"):
        return "openai", model
    # Default to anthropic
    return "anthropic", model


def create_adapter(model: str) -> ProviderAdapter:
    """Create a provider adapter for the given model string."""
    provider, model_name = parse_model_string(model)

    if provider == "anthropic":
        from promptchain.providers.anthropic_provider import AnthropicAdapter
        return AnthropicAdapter(model=model_name)
    elif provider == "openai":
        from promptchain.providers.openai_provider import OpenAIAdapter
        return OpenAIAdapter(model=model_name)
    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'anthropic/model' or 'openai/model'.")


def create_capability(kind: str = "provider", **kwargs) -> Capability:
    """Create a capability backend: 'provider' (SDK adapters), 'http' or 'echo'."""
    if kind == "provider":
        return ProviderCapability(**kwargs)
    elif kind == "http":
        from promptchain.config import GENERATION_SERVICE_KEY, GENERATION_SERVICE_URL
        from promptchain.providers.http_capability import HttpCapability
        base_url = kwargs.get("base_url") or GENERATION_SERVICE_URL
        if not base_url:
            raise ValueError("HTTP capability needs a base_url (PROMPTCHAIN_GENERATION_URL).")
        return HttpCapability(base_url=base_url, api_key=kwargs.get("api_key", GENERATION_SERVICE_KEY))
    elif kind == "echo":
        from promptchain.providers.echo import EchoCapability
        return EchoCapability(**kwargs)
    else:
        raise ValueError(f"Unknown capability backend: {kind}. Use 'provider', 'http' or 'echo'.")
