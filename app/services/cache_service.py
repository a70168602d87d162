"""
Cache/Presence Facade.

Single entry point for presence queries and read-heavy lookups (profiles,
paginated match lists, conversations). It is a pure optimization layer:
every backing failure reads as a cache miss and every write failure is a
no-op, so results are identical with the cache disabled.

Backed by Redis when the client is available, otherwise by an in-process
TTL map.
"""

import json
import time
from collections.abc import Callable, Iterable
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.message_domain import Message, conversation_key
from app.services.infrastructure.redis_client import FastRedisClient
from app.services.presence.presence_store import PresenceStore

logger = get_logger(__name__)


def user_profile_key(user_id: str) -> str:
    return f"user:profile:{user_id}"


def user_matches_prefix(user_id: str) -> str:
    return f"user:matches:{user_id}:page:"


def user_matches_key(user_id: str, page: int) -> str:
    return f"{user_matches_prefix(user_id)}{page}"


def conversation_cache_key(user_a: str, user_b: str) -> str:
    low, high = conversation_key(user_a, user_b)
    return f"conversation:{low}:{high}"


def conversation_generation_key(user_a: str, user_b: str) -> str:
    low, high = conversation_key(user_a, user_b)
    return f"conversation-gen:{low}:{high}"


class MemoryCache:
    """Process-local string cache with lazy TTL expiry.

    Methods never suspend, so each call is atomic on the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: dict[str, tuple[float | None, str]] = {}
        self._clock = clock

    def _live(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def _store(self, key: str, value: str, ttl_s: int | None) -> None:
        expires_at = self._clock() + ttl_s if ttl_s else None
        self._entries[key] = (expires_at, value)

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self._store(key, value, ttl_s)
        return True

    async def incr_with_ttl(self, key: str, ttl_s: int | None = None) -> int:
        value = int(self._live(key) or 0) + 1
        self._store(key, str(value), ttl_s)
        return value

    async def set_if_unchanged(
        self,
        guard_key: str,
        expected: str | None,
        key: str,
        value: str,
        ttl_s: int | None = None,
    ) -> bool:
        if self._live(guard_key) != expected:
            return False
        self._store(key, value, ttl_s)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_prefix(self, prefix: str, count: int = 100) -> list[str]:
        return [key for key in self._entries if key.startswith(prefix)]


class CacheService:
    def __init__(
        self,
        presence: PresenceStore,
        redis_client: FastRedisClient | None = None,
        memory: MemoryCache | None = None,
        conversation_cache_enabled: bool = settings.CONVERSATION_CACHE_ENABLED,
    ):
        self.presence = presence
        self._redis = redis_client
        self._memory = memory or MemoryCache()
        self.conversation_cache_enabled = conversation_cache_enabled

    @property
    def _backend(self):
        if self._redis is not None and self._redis.available:
            return self._redis
        return self._memory

    @property
    def backend_name(self) -> str:
        return "redis" if self._backend is self._redis else "memory"

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def get_json(self, key: str) -> Any | None:
        try:
            raw = await self._backend.get(key)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss", key=key[:50], error=str(e))
            return None

        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid JSON in cache entry, dropping", key=key[:50])
            await self.invalidate(key)
            return None

    async def set_json(self, key: str, value: Any, ttl_s: int) -> bool:
        try:
            return await self._backend.set_with_ttl(key, json.dumps(value, default=str), ttl_s)
        except Exception as e:
            logger.warning("Cache write failed", key=key[:50], error=str(e))
            return False

    async def invalidate(self, *keys: str) -> int:
        try:
            return await self._backend.delete(*keys)
        except Exception as e:
            logger.warning("Cache invalidation failed", keys=len(keys), error=str(e))
            return 0

    async def invalidate_prefix(self, prefix: str) -> int:
        try:
            keys = await self._backend.scan_prefix(prefix)
        except Exception as e:
            logger.warning("Cache scan failed", prefix=prefix[:50], error=str(e))
            return 0
        if not keys:
            return 0
        return await self.invalidate(*keys)

    # ------------------------------------------------------------------
    # User profiles and match pages
    # ------------------------------------------------------------------

    async def cache_user_profile(self, user_id: str, profile: dict[str, Any]) -> bool:
        return await self.set_json(
            user_profile_key(user_id), profile, settings.CACHE_TTL_USER_PROFILE
        )

    async def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        return await self.get_json(user_profile_key(user_id))

    async def invalidate_user_profile(self, user_id: str) -> int:
        return await self.invalidate(user_profile_key(user_id))

    async def cache_matches(self, user_id: str, page: int, matches: Any) -> bool:
        return await self.set_json(
            user_matches_key(user_id, page), matches, settings.CACHE_TTL_USER_MATCHES
        )

    async def get_matches(self, user_id: str, page: int) -> Any | None:
        return await self.get_json(user_matches_key(user_id, page))

    async def invalidate_all_matches(self, user_id: str) -> int:
        removed = await self.invalidate_prefix(user_matches_prefix(user_id))
        if removed:
            logger.info("Match cache invalidated", user_id=user_id, entries=removed)
        return removed

    async def on_profile_updated(self, user_id: str) -> None:
        """Visible attributes changed: who matches whom may have changed too."""
        await self.invalidate_user_profile(user_id)
        await self.invalidate_all_matches(user_id)

    # ------------------------------------------------------------------
    # Conversations
    #
    # Writers bump a per-conversation generation and drop the snapshot.
    # Readers fill the cache only if the generation they saw before loading
    # is still current, so a snapshot taken before a write never lands after it.
    # ------------------------------------------------------------------

    async def get_conversation(self, user_a: str, user_b: str) -> list[Message] | None:
        """Full (unfiltered) conversation, or None on miss or when disabled."""
        if not self.conversation_cache_enabled:
            return None
        cached = await self.get_json(conversation_cache_key(user_a, user_b))
        if not isinstance(cached, list):
            return None
        try:
            return [Message(**item) for item in cached]
        except (TypeError, ValueError):
            await self.invalidate_conversation(user_a, user_b)
            return None

    async def conversation_generation(self, user_a: str, user_b: str) -> str | None:
        """Read before loading from the store; pass to cache_conversation."""
        if not self.conversation_cache_enabled:
            return None
        try:
            return await self._backend.get(conversation_generation_key(user_a, user_b))
        except Exception as e:
            logger.warning("Cache read failed, treating as miss", error=str(e))
            return None

    async def cache_conversation(
        self, user_a: str, user_b: str, messages: list[Message], generation: str | None
    ) -> bool:
        """Store a snapshot unless the conversation was written since `generation` was read."""
        if not self.conversation_cache_enabled:
            return False
        payload = json.dumps([m.model_dump(mode="json") for m in messages], default=str)
        try:
            stored = await self._backend.set_if_unchanged(
                conversation_generation_key(user_a, user_b),
                generation,
                conversation_cache_key(user_a, user_b),
                payload,
                settings.CACHE_TTL_CONVERSATION,
            )
        except Exception as e:
            logger.warning("Cache write failed", error=str(e))
            return False

        if not stored:
            logger.debug("Conversation changed while loading, snapshot skipped")
        return stored

    async def invalidate_conversation(self, user_a: str, user_b: str) -> int:
        if not self.conversation_cache_enabled:
            return 0
        try:
            await self._backend.incr_with_ttl(
                conversation_generation_key(user_a, user_b),
                settings.CACHE_TTL_CONVERSATION * 2,
            )
        except Exception as e:
            logger.warning("Conversation generation bump failed", error=str(e))
        return await self.invalidate(conversation_cache_key(user_a, user_b))

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def is_online(self, user_id: str) -> bool:
        return await self.presence.is_online(user_id)

    async def list_online(self) -> list[str]:
        return await self.presence.list_online()

    async def online_status(self, user_ids: Iterable[str]) -> dict[str, bool]:
        """Bulk annotation for user lists, one presence range query."""
        online = set(await self.presence.list_online())
        return {user_id: user_id in online for user_id in user_ids}
