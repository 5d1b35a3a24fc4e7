"""Completion provider implementations.

The provider set is closed: every ProviderKind maps to exactly one adapter
class in build_provider, selected from the ProviderDescriptor list.
"""

from __future__ import annotations

import httpx

from ...config import ProviderCatalog, ProviderDescriptor, ProviderKind
from .anthropic import AnthropicProvider
from .base import CompletionProvider
from .gemini import GeminiProvider
from .huggingface import HuggingFaceProvider
from .openai_compatible import OpenAICompatibleProvider


def build_provider(
    descriptor: ProviderDescriptor,
    timeout: float = 60.0,
    api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CompletionProvider:
    """Instantiate the adapter for a descriptor.

    Raises:
        ValueError: If the descriptor's kind has no adapter.
    """
    kind = descriptor.kind
    if kind in (ProviderKind.groq, ProviderKind.together_ai, ProviderKind.openrouter, ProviderKind.lovable_ai):
        return OpenAICompatibleProvider(descriptor, api_key=api_key, timeout=timeout)
    if kind is ProviderKind.google_ai:
        return GeminiProvider(descriptor, api_key=api_key, timeout=timeout, transport=transport)
    if kind is ProviderKind.huggingface:
        return HuggingFaceProvider(descriptor, api_key=api_key, timeout=timeout, transport=transport)
    if kind is ProviderKind.anthropic:
        return AnthropicProvider(descriptor, api_key=api_key, timeout=timeout)
    raise ValueError(f"No adapter for provider kind {kind!r}")


def build_providers(catalog: ProviderCatalog, timeout: float = 60.0) -> list[CompletionProvider]:
    """Instantiate one adapter per catalog entry, in priority order."""
    return [build_provider(descriptor, timeout=timeout) for descriptor in catalog.providers]


def configured_providers(providers: list[CompletionProvider]) -> list[str]:
    """Names of providers that have credentials available."""
    return [p.name for p in providers if p.is_configured()]


__all__ = [
    "CompletionProvider",
    "OpenAICompatibleProvider",
    "GeminiProvider",
    "HuggingFaceProvider",
    "AnthropicProvider",
    "build_provider",
    "build_providers",
    "configured_providers",
]
