"""
Tenant-scoped agent configuration.

Persona, office facts and workflow text come from the booking backend per
organization and are cached with a TTL. Call invalidate() whenever the
external configuration changes; DEFAULT_AGENT_CONFIG is used only when the
backend has nothing (or fails).
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from app.config import settings
from app.core.scheduling.backend import BookingBackend, BookingError

logger = logging.getLogger(__name__)


class AgentConfig(BaseModel):
    """Per-organization configuration injected into the agents."""

    office_name: str = "our dental office"
    persona: str = "a friendly, efficient dental office receptionist"
    greeting: str = "Hello! Thanks for contacting {office_name}. How can I help you today?"
    hours: str = "Monday to Friday, 8 AM to 5 PM"
    location: str = ""
    phone: str = ""
    workflow_instructions: str = ""
    business_rules: list[str] = Field(default_factory=list)
    default_appointment_minutes: int = 30

    def greeting_text(self) -> str:
        return self.greeting.format(office_name=self.office_name)


DEFAULT_AGENT_CONFIG = AgentConfig()


class TenantConfigCache:
    """
    Agent configuration cache keyed by organization id.

    Usage:
        cache = TenantConfigCache(backend)
        config = await cache.get("org-1")
        cache.invalidate("org-1")
    """

    def __init__(
        self,
        backend: BookingBackend,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._backend = backend
        self._ttl = settings.tenant_config_ttl if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, AgentConfig]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, organization_id: str) -> AgentConfig:
        """Get the organization's config, loading it when missing or stale."""
        entry = self._entries.get(organization_id)
        if entry and self._clock() - entry[0] < self._ttl:
            return entry[1]

        lock = self._locks.setdefault(organization_id, asyncio.Lock())
        async with lock:
            entry = self._entries.get(organization_id)
            if entry and self._clock() - entry[0] < self._ttl:
                return entry[1]
            config = await self._load(organization_id)
            self._entries[organization_id] = (self._clock(), config)
            return config

    def invalidate(self, organization_id: str) -> bool:
        """Drop one organization's cached config. Returns True if it was cached."""
        removed = self._entries.pop(organization_id, None) is not None
        logger.info(f"Tenant config invalidated: org={organization_id} (cached={removed})")
        return removed

    def invalidate_all(self) -> None:
        self._entries.clear()
        logger.info("Tenant config cache cleared")

    async def _load(self, organization_id: str) -> AgentConfig:
        try:
            data = await self._backend.get_agent_config(organization_id)
        except BookingError as e:
            logger.warning(f"Agent config unavailable for org={organization_id}: {e.message}")
            return DEFAULT_AGENT_CONFIG

        if not data:
            logger.debug(f"No agent config for org={organization_id}, using defaults")
            return DEFAULT_AGENT_CONFIG

        try:
            return AgentConfig.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Invalid agent config for org={organization_id}: {e}")
            return DEFAULT_AGENT_CONFIG
