from __future__ import annotations

from typing import Dict, List, Optional

from ..core.models import AuthType, Provider
from .base import ProviderAdapter


class ProviderRegistry:
    """In-memory catalog of providers and their adapters.

    Read-mostly after startup; lookups are plain dict reads.
    """

    def __init__(self):
        self._providers: Dict[str, Provider] = {}
        self._adapters: Dict[str, ProviderAdapter] = {}

    # PUBLIC_INTERFACE
    def register(self, provider: Provider, adapter: Optional[ProviderAdapter] = None) -> None:
        """Register or replace a provider by id. Re-registration keeps its original position."""
        self._providers[provider.id] = provider
        if adapter is not None:
            self._adapters[provider.id] = adapter

    # PUBLIC_INTERFACE
    def get(self, provider_id: str) -> Optional[Provider]:
        """Return the provider with this id, or None."""
        return self._providers.get(provider_id)

    # PUBLIC_INTERFACE
    def adapter_for(self, provider_id: str) -> Optional[ProviderAdapter]:
        """Return the adapter registered for this provider, or None."""
        return self._adapters.get(provider_id)

    # PUBLIC_INTERFACE
    def list(self) -> List[Provider]:
        """List providers in registration order."""
        return list(self._providers.values())

    def by_auth_type(self, auth_type: AuthType) -> List[Provider]:
        return [p for p in self._providers.values() if p.auth_type == auth_type]

    def by_category(self, category: str) -> List[Provider]:
        return [p for p in self._providers.values() if p.category == category]

    def categories(self) -> List[str]:
        seen: Dict[str, None] = {}
        for p in self._providers.values():
            seen.setdefault(p.category, None)
        return list(seen)

    # PUBLIC_INTERFACE
    def search(self, query: str) -> List[Provider]:
        """Case-insensitive match over id, name and category."""
        needle = query.strip().lower()
        if not needle:
            return self.list()
        return [
            p
            for p in self._providers.values()
            if needle in p.id.lower() or needle in p.name.lower() or needle in p.category.lower()
        ]

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __len__(self) -> int:
        return len(self._providers)
