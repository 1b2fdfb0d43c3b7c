"""Lookup of provider adapters by provider name."""

from __future__ import annotations

from collections.abc import Iterable

from quonitor.config import Settings
from quonitor.errors import ProviderNotImplementedError
from quonitor.providers.anthropic import AnthropicAdapter
from quonitor.providers.base import Provider, ProviderAdapter
from quonitor.providers.github import GitHubAdapter
from quonitor.providers.google import GoogleAdapter
from quonitor.providers.openai import OpenAIAdapter


class ProviderRegistry:
    """Maps each :class:`Provider` to its adapter instance."""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: dict[Provider, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: Provider | str) -> ProviderAdapter:
        """Return the adapter for ``provider``.

        Raises:
            ValueError: If the provider name is unknown.
            ProviderNotImplementedError: If no adapter is registered for it.
        """
        key = Provider.parse(provider)
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ProviderNotImplementedError(f"No adapter registered for {key}", provider=key)
        return adapter

    def implemented_providers(self) -> list[Provider]:
        """Providers whose adapters can actually fetch usage."""
        return [p for p, adapter in self._adapters.items() if adapter.implemented]

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters


def build_default_registry(settings: Settings, *, timeout: float | None = None) -> ProviderRegistry:
    """Create a registry holding every built-in adapter."""
    http_timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
    return ProviderRegistry(
        [
            OpenAIAdapter(base_url=settings.openai_base_url, timeout=http_timeout),
            AnthropicAdapter(base_url=settings.anthropic_base_url, timeout=http_timeout),
            GoogleAdapter(timeout=http_timeout),
            GitHubAdapter(timeout=http_timeout),
        ]
    )
