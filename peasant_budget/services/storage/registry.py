"""
Provider Registry

An explicitly constructed id -> provider table, owned by the orchestrator.
Registration is last-write-wins: re-registering an id logs a warning
and replaces the previous instance.
"""

from typing import Iterator, Optional

from peasant_budget.log import get_logger
from peasant_budget.models.storage import AvailableProvider
from peasant_budget.services.storage.interface import StorageProvider


logger = get_logger(__name__)


class ProviderRegistry:
    """Table of storage providers keyed by provider id."""

    def __init__(self, providers: Optional[list[StorageProvider]] = None):
        self._providers: dict[str, StorageProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: StorageProvider) -> None:
        """Register a provider under its own provider_id."""
        provider_id = provider.provider_id
        if provider_id in self._providers:
            logger.warning("provider_already_registered", provider_id=provider_id)
        self._providers[provider_id] = provider
        logger.info("provider_registered", provider_id=provider_id)

    def get(self, provider_id: str) -> Optional[StorageProvider]:
        return self._providers.get(provider_id)

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)

    async def available_providers(self) -> list[AvailableProvider]:
        """Descriptors of all registered providers with their availability."""
        providers = []
        for provider in self._providers.values():
            descriptor = provider.get_descriptor()
            providers.append(AvailableProvider(
                **descriptor.model_dump(),
                available=await provider.is_available(),
            ))
        return providers
