"""
Service container.

Builds every realtime/messaging component once at startup and hands them to
routes through FastAPI dependencies. Backends are chosen here and nowhere
else: Redis-backed presence when a Redis URL is configured (memory fallback
per operation), Postgres-backed messages when the pool came up.
"""

import time
from dataclasses import dataclass

from fastapi import Request

from app.config import Settings, settings
from app.repositories.message_repository import MessageRepository, build_message_repository
from app.repositories.presence_repository import (
    MemoryPresenceRepository,
    RedisPresenceRepository,
)
from app.services.cache_service import CacheService
from app.services.infrastructure.redis_client import FastRedisClient
from app.services.messaging.message_service import MessageService
from app.services.presence.presence_store import Clock, PresenceStore
from app.services.realtime.connection_registry import ConnectionRegistry
from app.services.realtime.delivery_router import DeliveryRouter
from app.services.realtime.hub import RealtimeHub
from app.services.realtime.push_channel import PushChannel, WebSocketPushChannel


@dataclass
class Services:
    redis: FastRedisClient
    presence: PresenceStore
    registry: ConnectionRegistry
    channel: PushChannel
    router: DeliveryRouter
    hub: RealtimeHub
    cache: CacheService
    repository: MessageRepository
    messages: MessageService


def build_services(
    redis_client: FastRedisClient,
    database_ready: bool = False,
    config: Settings = settings,
    channel: PushChannel | None = None,
    repository: MessageRepository | None = None,
    clock: Clock = time.time,
) -> Services:
    primary = RedisPresenceRepository(redis_client) if redis_client.configured else None
    presence = PresenceStore(
        fallback=MemoryPresenceRepository(),
        primary=primary,
        ttl_seconds=config.PRESENCE_TTL_SECONDS,
        clock=clock,
    )

    registry = ConnectionRegistry()
    channel = channel if channel is not None else WebSocketPushChannel()
    router = DeliveryRouter(registry, channel, coalesce_seconds=config.delivery_coalesce_seconds())
    hub = RealtimeHub(
        registry,
        presence,
        router,
        channel=channel if isinstance(channel, WebSocketPushChannel) else None,
        heartbeat_interval=config.HEARTBEAT_INTERVAL_SECONDS,
    )

    cache = CacheService(
        presence,
        redis_client=redis_client,
        conversation_cache_enabled=config.CONVERSATION_CACHE_ENABLED,
    )

    if repository is None:
        repository = build_message_repository(
            database_ready, fallback_enabled=config.MESSAGE_STORE_FALLBACK_ENABLED
        )

    messages = MessageService(repository, presence, router=router, cache=cache)

    return Services(
        redis=redis_client,
        presence=presence,
        registry=registry,
        channel=channel,
        router=router,
        hub=hub,
        cache=cache,
        repository=repository,
        messages=messages,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_message_service(request: Request) -> MessageService:
    return get_services(request).messages


def get_cache_service(request: Request) -> CacheService:
    return get_services(request).cache


def get_hub(request: Request) -> RealtimeHub:
    return get_services(request).hub
