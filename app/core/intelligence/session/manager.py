"""Conversation state store backed by Redis with an in-memory fallback."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Optional

from app.config import settings
from app.infra.redis import get_redis, APP_PREFIX
from .models import ConversationState

logger = logging.getLogger(__name__)

# State key prefix (extends existing APP_PREFIX)
STATE_PREFIX = f"{APP_PREFIX}conversation:"


@dataclass
class _TurnLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationStateStore:
    """
    Per-session ConversationState storage.

    Key pattern: booking-orchestrator:v1:conversation:{organization_id}:{session_id}

    get() creates an empty state on first access, so it never fails for an
    unknown session. Gracefully handles Redis unavailability with an
    in-memory fallback.

    Also owns the per-session turn locks: turns within one session run one
    at a time, sessions run in parallel. A lock lives only while a turn
    holds or waits for it; fallback entries expire after the session TTL
    like their Redis counterparts.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize state store."""
        self._ttl = settings.redis_session_ttl
        self._clock = clock
        # key -> (expires_at, state)
        self._in_memory_fallback: dict[str, tuple[float, ConversationState]] = {}
        self._locks: dict[str, _TurnLock] = {}

    def _key(self, organization_id: str, session_id: str) -> str:
        """Generate Redis key."""
        return f"{STATE_PREFIX}{organization_id}:{session_id}"

    @asynccontextmanager
    async def lock(self, organization_id: str, session_id: str) -> AsyncGenerator[None, None]:
        """
        Hold the session's turn lock.

        Usage:
            async with store.lock(organization_id, session_id):
                ...  # one turn
        """
        key = self._key(organization_id, session_id)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _TurnLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def _fallback_get(self, key: str) -> Optional[ConversationState]:
        item = self._in_memory_fallback.get(key)
        if item is None:
            return None
        expires_at, state = item
        if expires_at <= self._clock():
            del self._in_memory_fallback[key]
            return None
        return state

    def _prune_fallback(self) -> None:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._in_memory_fallback.items() if expires_at <= now]
        for key in expired:
            del self._in_memory_fallback[key]
        if expired:
            logger.debug(f"Dropped {len(expired)} expired in-memory sessions")

    async def peek(
        self,
        organization_id: str,
        session_id: str,
    ) -> Optional[ConversationState]:
        """
        Get state without creating it.

        Returns:
            ConversationState or None if the session has no state
        """
        key = self._key(organization_id, session_id)
        redis = await get_redis()

        if redis:
            data = await redis.get(key)
            if data:
                return ConversationState.from_json(data)
            return None

        return self._fallback_get(key)

    async def get(
        self,
        organization_id: str,
        session_id: str,
    ) -> ConversationState:
        """
        Get state, creating an empty one on first access.

        Args:
            organization_id: Tenant identifier
            session_id: Session/call identifier

        Returns:
            Existing or new ConversationState
        """
        state = await self.peek(organization_id, session_id)
        if state is not None:
            return state

        state = ConversationState(
            session_id=session_id,
            organization_id=organization_id,
            max_messages=settings.max_history_messages,
        )
        await self.save(state)
        logger.debug(f"Conversation state created: {session_id}")
        return state

    async def merge(
        self,
        organization_id: str,
        session_id: str,
        patient: Optional[dict] = None,
        appointment_intent: Optional[dict] = None,
        pending_action: Any = None,
    ) -> ConversationState:
        """
        Merge a partial update into the session's state and persist it.

        Omitted (None) fields are preserved; UNSET clears a field.
        """
        state = await self.get(organization_id, session_id)
        changed = state.merge(
            patient=patient,
            appointment_intent=appointment_intent,
            pending_action=pending_action,
        )
        if changed:
            await self.save(state)
        return state

    async def save(self, state: ConversationState) -> bool:
        """
        Persist state.

        Returns:
            True if saved
        """
        key = self._key(state.organization_id, state.session_id)
        redis = await get_redis()

        if redis:
            await redis.setex(key, self._ttl, state.to_json())
            logger.debug(f"Conversation state saved: {state.session_id}")
            return True

        self._prune_fallback()
        self._in_memory_fallback[key] = (self._clock() + self._ttl, state)
        logger.warning(
            f"Redis unavailable, using in-memory fallback for session {state.session_id}"
        )
        return True

    async def delete(
        self,
        organization_id: str,
        session_id: str,
    ) -> bool:
        """
        Discard a session's state.

        Returns:
            True if state existed
        """
        key = self._key(organization_id, session_id)
        redis = await get_redis()

        if redis:
            deleted = await redis.delete(key)
            if deleted:
                logger.debug(f"Conversation state deleted: {session_id}")
            return bool(deleted)

        existed = self._fallback_get(key) is not None
        self._in_memory_fallback.pop(key, None)
        return existed


# Singleton
_store: Optional[ConversationStateStore] = None


def get_state_store() -> ConversationStateStore:
    """Get singleton ConversationStateStore."""
    global _store
    if _store is None:
        _store = ConversationStateStore()
    return _store
