"""
Tests for the provider registry.
"""

import asyncio

from peasant_budget.config import GoogleDriveSettings
from peasant_budget.services.storage import ProviderRegistry


class TestProviderRegistry:
    """Tests for registration and lookup."""

    def test_register_and_get(self, local_provider, drive_provider):
        """Test lookup by provider id."""
        registry = ProviderRegistry([local_provider, drive_provider])

        assert registry.get("local") is local_provider
        assert registry.get("google-drive") is drive_provider
        assert registry.get("dropbox") is None
        assert "local" in registry
        assert len(registry) == 2
        assert list(registry) == ["local", "google-drive"]

    def test_reregistering_replaces(self, make_local, backend):
        """Test that the last registration wins."""
        first = make_local(backend.open_context())
        second = make_local(backend.open_context())
        registry = ProviderRegistry([first])
        registry.register(second)

        assert registry.get("local") is second
        assert len(registry) == 1

    def test_registries_are_independent(self, local_provider):
        """Test that there is no shared global table."""
        ProviderRegistry([local_provider])
        assert len(ProviderRegistry()) == 0

    def test_available_providers(self, local_provider, make_drive):
        """Test descriptors with availability."""
        unconfigured = make_drive(settings=GoogleDriveSettings(client_id=None))
        registry = ProviderRegistry([local_provider, unconfigured])

        providers = {p.id: p for p in asyncio.run(registry.available_providers())}

        assert providers["local"].available
        assert providers["local"].supports_encryption
        assert not providers["google-drive"].available
        assert providers["google-drive"].requires_auth

    def test_keys_match_provider_ids(self, local_provider, drive_provider):
        """Test that a provider is always found under the id it reports."""
        registry = ProviderRegistry([local_provider, drive_provider])

        for provider_id in registry:
            provider = registry.get(provider_id)
            assert provider.provider_id == provider_id
            assert provider.get_descriptor().id == provider_id

        providers = asyncio.run(registry.available_providers())
        assert [p.id for p in providers] == list(registry)
