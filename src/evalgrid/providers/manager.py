from __future__ import annotations

import copy
from typing import Any, Callable

import httpx

from evalgrid.backoff import RetryPolicy
from evalgrid.config import Settings
from evalgrid.errors import ConfigError
from evalgrid.log import get_logger
from evalgrid.providers.anthropic import Anthropic
from evalgrid.providers.base import ModelProvider
from evalgrid.providers.echo import Echo
from evalgrid.providers.gemini import Gemini
from evalgrid.providers.openai import OPENROUTER_BASE, OpenAiChat
from evalgrid.providers.openai_responses import OpenAiResponses
from evalgrid.semaphore import LimiterRegistry

logger = get_logger(__name__)

Factory = Callable[["ProviderManager", str, dict[str, Any]], ModelProvider]


def _openai(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return OpenAiChat(
        model,
        mgr.api_key("openai"),
        mgr.client,
        mgr.limiters.get("openai"),
        config,
        retry=mgr.retry,
    )


def _openrouter(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return OpenAiChat(
        model,
        mgr.api_key("openrouter"),
        mgr.client,
        mgr.limiters.get("openrouter"),
        config,
        kind="openrouter",
        base_url=OPENROUTER_BASE,
        retry=mgr.retry,
        cost_function=None,
    )


def _openai_responses(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return OpenAiResponses(
        model,
        mgr.api_key("openai"),
        mgr.client,
        mgr.limiters.get("openai-responses"),
        config,
        retry=mgr.retry,
    )


def _anthropic(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return Anthropic(
        model,
        mgr.api_key("anthropic"),
        mgr.client,
        mgr.limiters.get("anthropic"),
        config,
        retry=mgr.retry,
    )


def _gemini(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return Gemini(
        model,
        mgr.api_key("gemini"),
        mgr.client,
        mgr.limiters.get("gemini"),
        config,
        retry=mgr.retry,
    )


def _echo(mgr: ProviderManager, model: str, config: dict[str, Any]) -> ModelProvider:
    return Echo(model, mgr.limiters.get("echo"), config)


PROVIDERS: dict[str, Factory] = {
    "openai": _openai,
    "openai-responses": _openai_responses,
    "openrouter": _openrouter,
    "anthropic": _anthropic,
    "gemini": _gemini,
    "echo": _echo,
}

_API_KEYS = {
    "openai": "openai_api_key",
    "anthropic": "anthropic_api_key",
    "openrouter": "openrouter_api_key",
    "gemini": "gemini_api_key",
}


def deep_equals(a: Any, b: Any) -> bool:
    """Structural equality over plain config data (mappings, sequences, scalars)."""
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(deep_equals(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(deep_equals(x, y) for x, y in zip(a, b))
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


class ProviderManager:
    """
    Resolves `kind:model` identifiers into provider instances.

    Instances are cached by id and config, so repeated lookups return the same
    object. Limiters come from an explicit registry, one per provider kind.
    """

    def __init__(
        self,
        settings: Settings,
        limiters: LimiterRegistry | None = None,
        client: httpx.AsyncClient | None = None,
        registry: dict[str, Factory] | None = None,
    ) -> None:
        self.settings = settings
        self.limiters = limiters or LimiterRegistry(settings.provider_concurrency)
        self.retry = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
        )
        self.registry = registry if registry is not None else PROVIDERS
        self._client = client
        self._owns_client = client is None
        self._cache: list[tuple[str, dict[str, Any], ModelProvider]] = []

    async def __aenter__(self) -> ProviderManager:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.timeout_seconds))
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("ProviderManager is not initialized. Use 'async with'.")
        return self._client

    def api_key(self, kind: str) -> str:
        key = getattr(self.settings, _API_KEYS[kind])
        if not key:
            env = _API_KEYS[kind].upper()
            raise ConfigError(f"Missing API key for {kind}: set {env} or EVALGRID_{env}")
        return key

    def get_provider(self, provider_id: str, config: dict[str, Any] | None = None) -> ModelProvider:
        config = config or {}
        for cached_id, cached_config, provider in self._cache:
            if cached_id == provider_id and deep_equals(cached_config, config):
                return provider

        kind, sep, model = provider_id.partition(":")
        if not sep or not model:
            raise ConfigError(f"Invalid provider id {provider_id!r}, expected 'kind:model'")
        factory = self.registry.get(kind)
        if factory is None:
            known = ", ".join(sorted(self.registry))
            raise ConfigError(f"Unknown provider kind {kind!r} (known: {known})")

        provider = factory(self, model, copy.deepcopy(config))
        self._cache.append((provider_id, copy.deepcopy(config), provider))
        logger.debug("created provider %s", provider.id)
        return provider
