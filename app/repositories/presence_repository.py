"""
Presence persistence backends.

Both repositories store the raw heartbeat timestamp; whether a user is online
is always computed by the caller from that timestamp and the TTL.

Redis layout:
    presence:user:{user_id}   JSON PresenceRecord, expires after the TTL
    presence:online           sorted set, member=user_id, score=last heartbeat
"""

import json
from typing import Protocol

import redis.asyncio as redis

from app.infrastructure.observability.logging import get_logger
from app.models.domain.presence_domain import PresenceRecord
from app.services.infrastructure.redis_client import FastRedisClient
from app.services.messaging.errors import BackingStoreUnavailable

logger = get_logger(__name__)

ONLINE_SET_KEY = "presence:online"


def presence_key(user_id: str) -> str:
    return f"presence:user:{user_id}"


class PresenceRepository(Protocol):
    name: str

    async def upsert(self, record: PresenceRecord, ttl_seconds: int) -> None: ...

    async def remove(self, user_id: str) -> None: ...

    async def get(self, user_id: str) -> PresenceRecord | None: ...

    async def last_heartbeat(self, user_id: str) -> float | None: ...

    async def users_since(self, min_timestamp: float) -> list[str]: ...

    async def prune_before(self, cutoff: float) -> list[str]: ...


class RedisPresenceRepository:
    """Presence shared across processes through Redis."""

    name = "redis"

    def __init__(self, redis_client: FastRedisClient):
        self._redis = redis_client

    async def upsert(self, record: PresenceRecord, ttl_seconds: int) -> None:
        client = await self._redis.require()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(presence_key(record.user_id), record.model_dump_json(), ex=ttl_seconds)
                pipe.zadd(ONLINE_SET_KEY, {record.user_id: record.last_heartbeat})
                await pipe.execute()
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence upsert failed: {e}", backend="redis") from e

    async def remove(self, user_id: str) -> None:
        client = await self._redis.require()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(presence_key(user_id))
                pipe.zrem(ONLINE_SET_KEY, user_id)
                await pipe.execute()
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence remove failed: {e}", backend="redis") from e

    async def get(self, user_id: str) -> PresenceRecord | None:
        client = await self._redis.require()
        try:
            raw = await client.get(presence_key(user_id))
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence get failed: {e}", backend="redis") from e

        if not raw:
            return None
        try:
            return PresenceRecord(**json.loads(raw))
        except (TypeError, ValueError):
            logger.warning("Invalid presence record in Redis", user_id=user_id)
            return None

    async def last_heartbeat(self, user_id: str) -> float | None:
        client = await self._redis.require()
        try:
            score = await client.zscore(ONLINE_SET_KEY, user_id)
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence score failed: {e}", backend="redis") from e
        return float(score) if score is not None else None

    async def users_since(self, min_timestamp: float) -> list[str]:
        client = await self._redis.require()
        try:
            members = await client.zrangebyscore(ONLINE_SET_KEY, min_timestamp, "+inf")
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence range failed: {e}", backend="redis") from e
        return [str(m) for m in members]

    async def prune_before(self, cutoff: float) -> list[str]:
        """Atomically read and drop every member whose heartbeat is older than cutoff."""
        client = await self._redis.require()
        upper = f"({cutoff}"
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zrangebyscore(ONLINE_SET_KEY, "-inf", upper)
                pipe.zremrangebyscore(ONLINE_SET_KEY, "-inf", upper)
                expired, _ = await pipe.execute()
        except (redis.RedisError, OSError) as e:
            raise BackingStoreUnavailable(f"presence prune failed: {e}", backend="redis") from e
        return [str(m) for m in expired]


class MemoryPresenceRepository:
    """Process-local presence. Disagrees across processes; degraded mode only."""

    name = "memory"

    def __init__(self):
        self._records: dict[str, PresenceRecord] = {}

    async def upsert(self, record: PresenceRecord, ttl_seconds: int) -> None:
        self._records[record.user_id] = record

    async def remove(self, user_id: str) -> None:
        self._records.pop(user_id, None)

    async def get(self, user_id: str) -> PresenceRecord | None:
        return self._records.get(user_id)

    async def last_heartbeat(self, user_id: str) -> float | None:
        record = self._records.get(user_id)
        return record.last_heartbeat if record else None

    async def users_since(self, min_timestamp: float) -> list[str]:
        return [
            user_id
            for user_id, record in self._records.items()
            if record.last_heartbeat >= min_timestamp
        ]

    async def prune_before(self, cutoff: float) -> list[str]:
        expired = [
            user_id for user_id, record in self._records.items() if record.last_heartbeat < cutoff
        ]
        for user_id in expired:
            del self._records[user_id]
        return expired
