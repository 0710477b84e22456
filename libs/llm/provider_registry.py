from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional

from libs.core.config import Settings, load_settings
from libs.core.models import Tier

from .providers import LLMProvider, build_providers

PREFERENCE_ORDER: Dict[Tier, List[str]] = {
    Tier.free: ["zhipu"],
    Tier.paid: ["deepseek", "openai"],
}


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: Dict[str, LLMProvider] = {}
        self._lock = Lock()

    def register(self, provider: LLMProvider) -> None:
        with self._lock:
            self._providers[provider.name] = provider

    def get(self, name: str) -> Optional[LLMProvider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers)

    def list_available(self, tier: Tier | str | None = None) -> List[LLMProvider]:
        resolved = Tier(tier) if tier is not None else None
        return [
            provider
            for provider in self._providers.values()
            if provider.is_ready() and (resolved is None or provider.tier == resolved)
        ]

    def preferred(self, tier: Tier | str) -> Optional[LLMProvider]:
        available = self.list_available(tier)
        if not available:
            return None
        by_name = {provider.name: provider for provider in available}
        for name in PREFERENCE_ORDER.get(Tier(tier), []):
            if name in by_name:
                return by_name[name]
        return available[0]


def default_registry(settings: Settings | None = None) -> ProviderRegistry:
    registry = ProviderRegistry()
    for provider in build_providers(settings or load_settings()):
        registry.register(provider)
    return registry
