import fnmatch
from typing import Any

import pytest
import redis
from fastapi.testclient import TestClient

from app.auth.verify import auth_dependency
from app.repositories.message_repository import MemoryMessageRepository
from app.repositories.presence_repository import (
    MemoryPresenceRepository,
    RedisPresenceRepository,
)
from app.services.cache_service import CacheService, MemoryCache
from app.services.infrastructure.redis_client import FastRedisClient
from app.services.messaging.message_service import MessageService
from app.services.presence.presence_store import PresenceStore
from app.services.realtime.connection_registry import ConnectionRegistry
from app.services.realtime.delivery_router import EVENT_BATCH, DeliveryRouter
from app.services.realtime.hub import RealtimeHub
from app.services.realtime.push_channel import PushFailed


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _score_bound(value) -> tuple[float, bool]:
    """Parse a Redis score bound into (value, exclusive)."""
    if isinstance(value, str):
        if value in ("-inf", "+inf", "inf"):
            return float(value), False
        if value.startswith("("):
            return float(value[1:]), True
        return float(value), False
    return float(value), False


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the app uses."""

    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("fake redis is down")

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        return None

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.store[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def setex(self, key: str, ttl_s: int, value: str) -> bool:
        return await self.set(key, value, ex=ttl_s)

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.store.get(key) or 0) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        self._check()
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    async def zrem(self, name: str, *members: str) -> int:
        self._check()
        zset = self.zsets.get(name, {})
        return sum(1 for member in members if zset.pop(member, None) is not None)

    async def zscore(self, name: str, member: str) -> float | None:
        self._check()
        return self.zsets.get(name, {}).get(member)

    def _in_range(self, score: float, low, high) -> bool:
        low_value, low_exclusive = _score_bound(low)
        high_value, high_exclusive = _score_bound(high)
        above = score > low_value if low_exclusive else score >= low_value
        below = score < high_value if high_exclusive else score <= high_value
        return above and below

    async def zrangebyscore(self, name: str, low, high) -> list[str]:
        self._check()
        items = sorted(self.zsets.get(name, {}).items(), key=lambda item: item[1])
        return [member for member, score in items if self._in_range(score, low, high)]

    async def zremrangebyscore(self, name: str, low, high) -> int:
        self._check()
        zset = self.zsets.get(name, {})
        doomed = [member for member, score in zset.items() if self._in_range(score, low, high)]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    """Queues commands and runs them in order on execute().

    After watch() commands run immediately until multi(); execute() then
    raises WatchError if a watched key changed in between.
    """

    def __init__(self, redis_client: FakeRedis):
        self._redis = redis_client
        self._commands: list[tuple[str, tuple, dict]] = []
        self._watched: dict[str, str | None] | None = None
        self._immediate = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._commands.clear()
        self._watched = None

    async def watch(self, *names: str) -> bool:
        self._redis._check()
        self._watched = {name: self._redis.store.get(name) for name in names}
        self._immediate = True
        return True

    def multi(self) -> None:
        self._immediate = False

    def __getattr__(self, name: str):
        if self._immediate:
            return getattr(self._redis, name)

        def _queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list[Any]:
        self._redis._check()
        watched, self._watched = self._watched, None
        if watched and any(self._redis.store.get(k) != v for k, v in watched.items()):
            self._commands.clear()
            raise redis.WatchError("Watched variable changed.")
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakePushChannel:
    """Records frames per connection; connections in `dead` raise PushFailed."""

    def __init__(self):
        self.frames: dict[str, list[dict[str, Any]]] = {}
        self.dead: set[str] = set()

    async def send(self, connection_id: str, frame: dict[str, Any]) -> None:
        if connection_id in self.dead:
            raise PushFailed(connection_id, "connection closed")
        self.frames.setdefault(connection_id, []).append(frame)

    def events(self, connection_id: str, event: str | None = None) -> list[dict[str, Any]]:
        """Flatten batch frames into individual {event, data} items."""
        flat = []
        for frame in self.frames.get(connection_id, []):
            if frame["event"] == EVENT_BATCH:
                flat.extend(frame["data"])
            else:
                flat.append(frame)
        if event is not None:
            flat = [item for item in flat if item["event"] == event]
        return flat


def make_fast_redis(fake: FakeRedis) -> FastRedisClient:
    client = FastRedisClient()
    client.client = fake
    client._initialized = True
    return client


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def push_channel():
    return FakePushChannel()


@pytest.fixture
def presence_store(clock):
    return PresenceStore(MemoryPresenceRepository(), ttl_seconds=60, clock=clock)


@pytest.fixture
def redis_presence_store(fake_redis, clock):
    primary = RedisPresenceRepository(make_fast_redis(fake_redis))
    return PresenceStore(MemoryPresenceRepository(), primary=primary, ttl_seconds=60, clock=clock)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def router(registry, push_channel):
    return DeliveryRouter(registry, push_channel, coalesce_seconds=0)


@pytest.fixture
def hub(registry, presence_store, router):
    return RealtimeHub(registry, presence_store, router)


@pytest.fixture
def message_repository():
    return MemoryMessageRepository()


@pytest.fixture
def cache_service(presence_store, clock):
    return CacheService(presence_store, memory=MemoryCache(clock=clock))


@pytest.fixture
def message_service(message_repository, presence_store, router, cache_service):
    return MessageService(message_repository, presence_store, router=router, cache=cache_service)


@pytest.fixture
def client(apply_auth_override):
    """TestClient running the real lifespan with in-memory backends."""
    from app.main import app

    apply_auth_override(app)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def failing_redis_client():
    """FastRedisClient whose every command raises redis.ConnectionError."""
    return make_fast_redis(FakeRedis(fail=True))


@pytest.fixture
def fast_redis_client(fake_redis):
    return make_fast_redis(fake_redis)


@pytest.fixture
def login(client):
    """Switch the authenticated user for subsequent requests."""
    from app.main import app

    def _login(user_id: str):
        app.dependency_overrides[auth_dependency] = lambda: {"sub": user_id}

    return _login


def receive_until(websocket, event: str, max_frames: int = 10) -> dict[str, Any]:
    """Read frames (unwrapping batches) until one carries `event`."""
    for _ in range(max_frames):
        frame = websocket.receive_json()
        items = frame["data"] if frame["event"] == EVENT_BATCH else [frame]
        for item in items:
            if item["event"] == event:
                return item
    raise AssertionError(f"no {event!r} event within {max_frames} frames")


@pytest.fixture
def wait_for_event():
    return receive_until
