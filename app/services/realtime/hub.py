"""
Realtime hub - wires the Connection Registry, Presence Store and Delivery
Router together and owns the side effects of socket lifecycle events.

Control flow:
    identify   -> registry -> presence online -> presence broadcast
    disconnect -> registry -> (last connection) presence offline -> broadcast
    push error -> router dead-connection handler -> disconnect -> socket closed
"""

import asyncio
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.services.presence.presence_store import PresenceStore
from app.services.realtime.connection_registry import ConnectionRegistry
from app.services.realtime.delivery_router import EVENT_ONLINE_USERS, DeliveryRouter
from app.services.realtime.push_channel import WebSocketPushChannel

logger = get_logger(__name__)


class RealtimeHub:
    def __init__(
        self,
        registry: ConnectionRegistry,
        presence: PresenceStore,
        router: DeliveryRouter,
        channel: WebSocketPushChannel | None = None,
        heartbeat_interval: float | None = None,
    ):
        self.registry = registry
        self.presence = presence
        self.router = router
        self.channel = channel
        self.heartbeat_interval = heartbeat_interval
        self._heartbeats: dict[str, asyncio.Task] = {}

        router.set_dead_connection_handler(self.disconnect)

    async def identify(self, connection_id: str, user_id: str) -> bool:
        """
        Bind a connection to a user and mark them online.

        Returns:
            True if this was the user's first live connection
        """
        first, orphaned = self.registry.identify(connection_id, user_id)
        if orphaned is not None:
            await self._go_offline(orphaned)

        came_online = await self.presence.set_online(user_id, connection_id)
        if first or came_online:
            self.router.broadcast_presence(user_id, True)

        online = await self.presence.list_online()
        self.router.push_to_connection(connection_id, EVENT_ONLINE_USERS, {"users": online})

        self._start_heartbeat(connection_id, user_id)
        return first

    async def disconnect(self, connection_id: str) -> str | None:
        """
        Forget a connection. Safe to call twice or for unknown ids.

        Returns:
            The user id that went offline, if this was their last connection
        """
        self._stop_heartbeat(connection_id)
        self.router.drop(connection_id)
        if self.channel is not None:
            await self.channel.close(connection_id)

        user_id = self.registry.disconnect(connection_id)
        if user_id is not None:
            await self._go_offline(user_id)
        return user_id

    async def _go_offline(self, user_id: str) -> None:
        await self.presence.set_offline(user_id)
        self.router.broadcast_presence(user_id, False)
        logger.info("User went offline", user_id=user_id)

    async def heartbeat(self, user_id: str, connection_id: str | None = None) -> bool:
        """Refresh presence; broadcast if the user had aged out in the meantime."""
        came_online = await self.presence.heartbeat(user_id, connection_id)
        if came_online:
            self.router.broadcast_presence(user_id, True)
        return came_online

    async def activity(self, connection_id: str) -> bool:
        user_id = self.registry.user_for(connection_id)
        if user_id is None:
            return False
        return await self.heartbeat(user_id, connection_id)

    def typing(self, connection_id: str, to_user_id: str, is_typing: bool) -> int:
        from_user_id = self.registry.user_for(connection_id)
        if from_user_id is None:
            return 0
        return self.router.notify_typing(from_user_id, to_user_id, is_typing)

    def join_room(self, connection_id: str, room_id: str) -> None:
        self.registry.join_room(connection_id, room_id)
        logger.debug("Connection joined room", connection_id=connection_id, room_id=room_id)

    def leave_room(self, connection_id: str, room_id: str) -> None:
        self.registry.leave_room(connection_id, room_id)
        logger.debug("Connection left room", connection_id=connection_id, room_id=room_id)

    async def sweep(self) -> list[str]:
        """Broadcast offline for users whose heartbeat aged past the TTL."""
        expired = await self.presence.sweep()
        for user_id in expired:
            self.router.broadcast_presence(user_id, False)
        return expired

    # ------------------------------------------------------------------
    # Server-side heartbeat while a socket stays open
    # ------------------------------------------------------------------

    def _start_heartbeat(self, connection_id: str, user_id: str) -> None:
        if not self.heartbeat_interval:
            return
        self._stop_heartbeat(connection_id)
        self._heartbeats[connection_id] = asyncio.create_task(
            self._heartbeat_loop(connection_id, user_id)
        )

    def _stop_heartbeat(self, connection_id: str) -> None:
        task = self._heartbeats.pop(connection_id, None)
        if task is not None:
            task.cancel()

    async def _heartbeat_loop(self, connection_id: str, user_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if self.registry.user_for(connection_id) != user_id:
                return
            await self.heartbeat(user_id, connection_id)

    async def close(self) -> None:
        tasks = list(self._heartbeats.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeats.clear()
        await self.router.close()

    async def stats(self) -> dict[str, Any]:
        presence_stats = await self.presence.stats()
        return {
            **presence_stats,
            **self.registry.stats(),
            "active_heartbeats": len(self._heartbeats),
        }
