"""
Presence API Routes
Read-only views of the Presence Store plus an HTTP heartbeat for clients
that are not holding a socket open.
"""

from typing import Any

from fastapi import APIRouter, Depends

from app.auth.verify import current_user_id
from app.dependencies import get_cache_service, get_hub
from app.infrastructure.observability.logging import get_logger
from app.models.api.message_request import PresenceStatusRequest
from app.models.api.message_response import (
    HeartbeatResponse,
    OnlineUsersResponse,
    PresenceResponse,
)
from app.services.cache_service import CacheService
from app.services.realtime.hub import RealtimeHub

logger = get_logger(__name__)

router = APIRouter(prefix="/presence", tags=["presence"])


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    user_id: str = Depends(current_user_id),
    hub: RealtimeHub = Depends(get_hub),
):
    came_online = await hub.heartbeat(user_id)
    if came_online:
        logger.info("User back online via HTTP heartbeat", user_id=user_id)
    return HeartbeatResponse(success=True, user_id=user_id)


@router.get("/online", response_model=OnlineUsersResponse)
async def online_users(
    user_id: str = Depends(current_user_id),
    cache: CacheService = Depends(get_cache_service),
):
    users = await cache.list_online()
    return OnlineUsersResponse(users=users, count=len(users))


@router.get("/stats")
async def presence_stats(
    user_id: str = Depends(current_user_id),
    hub: RealtimeHub = Depends(get_hub),
) -> dict[str, Any]:
    return await hub.stats()


@router.post("/status")
async def bulk_status(
    request: PresenceStatusRequest,
    user_id: str = Depends(current_user_id),
    cache: CacheService = Depends(get_cache_service),
) -> dict[str, bool]:
    """Online flag for each requested user id."""
    return await cache.online_status(request.user_ids)


@router.get("/{target_user_id}", response_model=PresenceResponse)
async def user_presence(
    target_user_id: str,
    user_id: str = Depends(current_user_id),
    hub: RealtimeHub = Depends(get_hub),
):
    record = await hub.presence.get_presence(target_user_id)
    online = await hub.presence.is_online(target_user_id)
    return PresenceResponse(
        user_id=target_user_id,
        online=online,
        last_heartbeat=record.last_heartbeat if record else None,
        expires_at=record.expires_at(hub.presence.ttl_seconds) if record else None,
    )
