"""Tests for the tenant agent configuration cache."""

import pytest
from unittest.mock import AsyncMock

from app.core.agent.tenant_config import DEFAULT_AGENT_CONFIG, AgentConfig, TenantConfigCache
from app.core.scheduling.backend import TransientBackendError
from app.core.scheduling.memory_backend import InMemoryBookingBackend


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestTenantConfigCache:
    """Test TTL caching and invalidation."""

    @pytest.fixture
    def backend(self):
        backend = InMemoryBookingBackend()
        backend.set_agent_config("org-1", {"office_name": "Bright Smiles Dental", "hours": "Mon-Thu 9-5"})
        return backend

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cache(self, backend, clock):
        return TenantConfigCache(backend, ttl_seconds=60, clock=clock)

    def _config_loads(self, backend) -> int:
        return sum(1 for _, op, _ in backend.calls if op == "tenant.agent_config")

    @pytest.mark.asyncio
    async def test_loads_tenant_config(self, cache):
        config = await cache.get("org-1")

        assert config.office_name == "Bright Smiles Dental"
        assert config.greeting_text().startswith("Hello! Thanks for contacting Bright Smiles Dental.")

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, cache, backend, clock):
        await cache.get("org-1")
        clock.now += 30
        await cache.get("org-1")

        assert self._config_loads(backend) == 1

    @pytest.mark.asyncio
    async def test_reloaded_after_ttl(self, cache, backend, clock):
        await cache.get("org-1")
        backend.set_agent_config("org-1", {"office_name": "Renamed Dental"})
        clock.now += 61

        config = await cache.get("org-1")

        assert config.office_name == "Renamed Dental"
        assert self._config_loads(backend) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, cache, backend):
        await cache.get("org-1")
        backend.set_agent_config("org-1", {"office_name": "Renamed Dental"})

        assert cache.invalidate("org-1") is True
        assert cache.invalidate("org-1") is False
        assert (await cache.get("org-1")).office_name == "Renamed Dental"

    @pytest.mark.asyncio
    async def test_tenants_isolated(self, cache):
        other = await cache.get("org-2")

        assert other == DEFAULT_AGENT_CONFIG
        assert (await cache.get("org-1")).office_name == "Bright Smiles Dental"

    @pytest.mark.asyncio
    async def test_backend_failure_uses_default(self, clock):
        backend = AsyncMock()
        backend.get_agent_config = AsyncMock(side_effect=TransientBackendError("timeout"))
        cache = TenantConfigCache(backend, ttl_seconds=60, clock=clock)

        assert await cache.get("org-1") == DEFAULT_AGENT_CONFIG

    @pytest.mark.asyncio
    async def test_invalid_config_uses_default(self, backend, cache):
        backend.set_agent_config("org-3", {"business_rules": "not a list"})

        assert await cache.get("org-3") == DEFAULT_AGENT_CONFIG

    def test_default_greeting(self):
        assert AgentConfig().greeting_text() == (
            "Hello! Thanks for contacting our dental office. How can I help you today?"
        )
