"""
Presence Store - advisory online/offline tracking with TTL self-healing.

A user is online iff their last heartbeat is at most PRESENCE_TTL seconds old.
Nothing stores an "online" boolean, so a crashed client simply ages out.

Backends:
- Redis (shared across processes) when configured and reachable
- Process memory otherwise, and per operation whenever Redis errors

Every public method is fail-soft: backend errors are logged and the memory
repository answers instead. Nothing here raises to the caller.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from app.infrastructure.observability.logging import get_logger
from app.models.domain.presence_domain import PresenceRecord
from app.repositories.presence_repository import PresenceRepository

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class PresenceStore:
    def __init__(
        self,
        fallback: PresenceRepository,
        primary: PresenceRepository | None = None,
        ttl_seconds: int = 60,
        clock: Clock = time.time,
    ):
        self.fallback = fallback
        self.primary = primary
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.last_backend = primary.name if primary else fallback.name

    def now(self) -> float:
        return self._clock()

    async def _call(self, operation: str, fn: Callable[[PresenceRepository], Awaitable[T]]) -> T:
        """Run fn against the primary, falling back to memory on any error."""
        if self.primary is not None:
            try:
                result = await fn(self.primary)
                self.last_backend = self.primary.name
                return result
            except Exception as e:
                logger.warning(
                    "Presence backend failed, using in-process fallback",
                    operation=operation,
                    backend=self.primary.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        self.last_backend = self.fallback.name
        return await fn(self.fallback)

    def _alive(self, last_heartbeat: float | None) -> bool:
        return last_heartbeat is not None and self.now() - last_heartbeat <= self.ttl_seconds

    async def set_online(self, user_id: str, connection_id: str | None = None) -> bool:
        """
        Upsert the presence record with the current time.

        Returns:
            True if the user was not online before this call
        """
        record = PresenceRecord(
            user_id=user_id, last_heartbeat=self.now(), connection_id=connection_id
        )

        async def _upsert(repo: PresenceRepository) -> bool:
            previous = await repo.last_heartbeat(user_id)
            await repo.upsert(record, self.ttl_seconds)
            return not self._alive(previous)

        came_online = await self._call("set_online", _upsert)
        logger.debug("User set online", user_id=user_id, came_online=came_online)
        return came_online

    async def heartbeat(self, user_id: str, connection_id: str | None = None) -> bool:
        """Refresh the TTL. Same contract as set_online."""
        return await self.set_online(user_id, connection_id)

    async def set_offline(self, user_id: str) -> None:
        """Drop the record now instead of waiting for the TTL."""
        await self._call("set_offline", lambda repo: repo.remove(user_id))
        logger.debug("User set offline", user_id=user_id)

    async def is_online(self, user_id: str) -> bool:
        last = await self._call("is_online", lambda repo: repo.last_heartbeat(user_id))
        return self._alive(last)

    async def get_presence(self, user_id: str) -> PresenceRecord | None:
        return await self._call("get_presence", lambda repo: repo.get(user_id))

    async def list_online(self) -> list[str]:
        cutoff = self.now() - self.ttl_seconds
        users = await self._call("list_online", lambda repo: repo.users_since(cutoff))
        return sorted(set(users))

    async def sweep(self) -> list[str]:
        """Remove stale records and return the users that aged out."""
        cutoff = self.now() - self.ttl_seconds
        expired = await self._call("sweep", lambda repo: repo.prune_before(cutoff))
        if self.primary is not None and self.last_backend == self.primary.name:
            # Records written to memory during a Redis outage age out here too
            stranded = [
                user_id
                for user_id in await self.fallback.prune_before(cutoff)
                if not await self.is_online(user_id)
            ]
            expired = sorted(set(expired) | set(stranded))
        if expired:
            logger.info("Expired presence records removed", count=len(expired))
        return expired

    async def stats(self) -> dict[str, Any]:
        online = await self.list_online()
        return {
            "backend": self.last_backend,
            "total_online": len(online),
            "ttl_seconds": self.ttl_seconds,
        }
