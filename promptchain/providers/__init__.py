"""Capability layer — model-agnostic text generation."""

from promptchain.providers.base import Capability, ProviderAdapter, ProviderCapability
from promptchain.providers.echo import EchoCapability
from promptchain.providers.factory import create_capability

__all__ = ["Capability", "EchoCapability", "ProviderAdapter", "ProviderCapability", "create_capability"]
