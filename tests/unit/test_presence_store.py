"""
Tests for TTL-derived presence, Redis-backed and in-process.
"""

import pytest

from app.repositories.presence_repository import (
    ONLINE_SET_KEY,
    MemoryPresenceRepository,
    RedisPresenceRepository,
    presence_key,
)
from app.services.presence.presence_store import PresenceStore


@pytest.mark.asyncio
async def test_set_online_reports_transition(presence_store):
    assert await presence_store.set_online("alice") is True
    assert await presence_store.set_online("alice") is False
    assert await presence_store.is_online("alice") is True


@pytest.mark.asyncio
async def test_presence_expires_without_heartbeat(presence_store, clock):
    """A client that stops heartbeating ages out with no explicit disconnect."""
    await presence_store.set_online("alice")

    clock.advance(60)
    assert await presence_store.is_online("alice") is True

    clock.advance(1)
    assert await presence_store.is_online("alice") is False
    assert "alice" not in await presence_store.list_online()


@pytest.mark.asyncio
async def test_heartbeat_extends_presence(presence_store, clock):
    await presence_store.set_online("alice")

    clock.advance(45)
    assert await presence_store.heartbeat("alice") is False

    clock.advance(45)
    assert await presence_store.is_online("alice") is True


@pytest.mark.asyncio
async def test_heartbeat_after_expiry_reports_came_online(presence_store, clock):
    await presence_store.set_online("alice")
    clock.advance(61)

    assert await presence_store.heartbeat("alice") is True


@pytest.mark.asyncio
async def test_set_offline_is_immediate(presence_store):
    await presence_store.set_online("alice")
    await presence_store.set_offline("alice")

    assert await presence_store.is_online("alice") is False
    assert await presence_store.get_presence("alice") is None


@pytest.mark.asyncio
async def test_list_online_is_sorted(presence_store):
    for user_id in ("carol", "alice", "bob"):
        await presence_store.set_online(user_id)

    assert await presence_store.list_online() == ["alice", "bob", "carol"]


@pytest.mark.asyncio
async def test_sweep_returns_expired_users(presence_store, clock):
    await presence_store.set_online("alice")
    clock.advance(30)
    await presence_store.set_online("bob")
    clock.advance(40)

    assert await presence_store.sweep() == ["alice"]
    assert await presence_store.sweep() == []
    assert await presence_store.list_online() == ["bob"]


@pytest.mark.asyncio
async def test_stats(presence_store):
    await presence_store.set_online("alice")

    stats = await presence_store.stats()

    assert stats == {"backend": "memory", "total_online": 1, "ttl_seconds": 60}


@pytest.mark.asyncio
async def test_redis_layout(redis_presence_store, fake_redis, clock):
    await redis_presence_store.set_online("alice", "conn-1")

    assert fake_redis.zsets[ONLINE_SET_KEY]["alice"] == clock.now
    assert fake_redis.ttls[presence_key("alice")] == 60

    record = await redis_presence_store.get_presence("alice")
    assert record.connection_id == "conn-1"
    assert redis_presence_store.last_backend == "redis"


@pytest.mark.asyncio
async def test_redis_presence_expires_and_sweeps(redis_presence_store, fake_redis, clock):
    await redis_presence_store.set_online("alice")
    clock.advance(61)

    assert await redis_presence_store.is_online("alice") is False
    assert await redis_presence_store.sweep() == ["alice"]
    assert "alice" not in fake_redis.zsets[ONLINE_SET_KEY]


@pytest.mark.asyncio
async def test_redis_failure_falls_back_to_memory(clock, failing_redis_client):
    """Presence never raises: a dead Redis degrades to in-process state."""
    store = PresenceStore(
        MemoryPresenceRepository(),
        primary=RedisPresenceRepository(failing_redis_client),
        clock=clock,
    )

    assert await store.set_online("alice") is True
    assert await store.is_online("alice") is True
    assert await store.list_online() == ["alice"]
    assert store.last_backend == "memory"


@pytest.mark.asyncio
async def test_unconfigured_redis_falls_back_to_memory(clock):
    from app.services.infrastructure.redis_client import FastRedisClient

    store = PresenceStore(
        MemoryPresenceRepository(),
        primary=RedisPresenceRepository(FastRedisClient()),
        clock=clock,
    )

    await store.set_online("alice")

    assert await store.is_online("alice") is True
    assert (await store.stats())["backend"] == "memory"


def test_presence_record_derives_online_from_age():
    from app.models.domain.presence_domain import PresenceRecord

    record = PresenceRecord(user_id="alice", last_heartbeat=100.0)

    assert record.is_online(now=160.0, ttl_seconds=60) is True
    assert record.is_online(now=160.5, ttl_seconds=60) is False
    assert record.expires_at(60) == 160.0


@pytest.mark.asyncio
async def test_sweep_prunes_memory_records_left_from_redis_outage(
    redis_presence_store, fake_redis, clock
):
    fake_redis.fail = True
    await redis_presence_store.set_online("carol")
    fake_redis.fail = False
    await redis_presence_store.set_online("dave")

    clock.advance(61)

    assert await redis_presence_store.sweep() == ["carol", "dave"]
    assert await redis_presence_store.fallback.last_heartbeat("carol") is None


@pytest.mark.asyncio
async def test_sweep_skips_stranded_user_who_is_back_on_redis(
    redis_presence_store, fake_redis, clock
):
    fake_redis.fail = True
    await redis_presence_store.set_online("carol")
    fake_redis.fail = False

    clock.advance(61)
    await redis_presence_store.set_online("carol")

    assert await redis_presence_store.sweep() == []
    assert await redis_presence_store.fallback.last_heartbeat("carol") is None
    assert await redis_presence_store.is_online("carol") is True
