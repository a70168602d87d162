"""
Delivery Router - fan-out of real-time events to live connections.

Design:
- Callers enqueue and return immediately; nothing on the request path awaits
  a socket write.
- Every connection has its own outbox drained by its own task, so one slow
  or dead peer never delays the others.
- Events arriving within the coalescing window are sent as one "batch" frame.
  Order inside an outbox is the enqueue order.
- A failed push means the connection is dead: its outbox is dropped and the
  dead-connection handler (the hub's disconnect) runs. No retries; the message
  itself stays retrievable from the Message Store.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.models.domain.message_domain import Message
from app.services.realtime.connection_registry import ConnectionRegistry
from app.services.realtime.push_channel import PushChannel, PushFailed

logger = get_logger(__name__)

DeadConnectionHandler = Callable[[str], Awaitable[Any]]

EVENT_MESSAGE = "message"
EVENT_SEEN = "seen"
EVENT_PRESENCE = "presence"
EVENT_TYPING = "typing"
EVENT_ONLINE_USERS = "online_users"
EVENT_ERROR = "error"
EVENT_BATCH = "batch"


def message_payload(message: Message) -> dict[str, Any]:
    return message.model_dump(mode="json")


class DeliveryRouter:
    def __init__(
        self,
        registry: ConnectionRegistry,
        channel: PushChannel,
        coalesce_seconds: float = 0.05,
        on_dead_connection: DeadConnectionHandler | None = None,
    ):
        self.registry = registry
        self.channel = channel
        self.coalesce_seconds = coalesce_seconds
        self._on_dead_connection = on_dead_connection

        self._outbox: dict[str, list[dict[str, Any]]] = {}
        self._drain_tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    def set_dead_connection_handler(self, handler: DeadConnectionHandler) -> None:
        self._on_dead_connection = handler

    # ------------------------------------------------------------------
    # Public events
    # ------------------------------------------------------------------

    def deliver(self, message: Message) -> int:
        """Push a new or updated message to every connection of both participants."""
        targets = self.registry.connections_for(message.sender_id) | self.registry.connections_for(
            message.recipient_id
        )
        payload = message_payload(message)
        for connection_id in targets:
            self._enqueue(connection_id, EVENT_MESSAGE, payload)

        logger.debug("Message queued for delivery", message_id=message.id, targets=len(targets))
        return len(targets)

    def notify_seen(self, message: Message) -> int:
        """Tell the original sender's devices that the message was seen."""
        targets = self.registry.connections_for(message.sender_id)
        payload = {
            "message_id": message.id,
            "seen_by": message.recipient_id,
            "message": message_payload(message),
        }
        for connection_id in targets:
            self._enqueue(connection_id, EVENT_SEEN, payload)
        return len(targets)

    def broadcast_presence(self, user_id: str, online: bool) -> int:
        """Global broadcast; fine at this scale and keeps the contract simple."""
        targets = self.registry.all_connections()
        payload = {"user_id": user_id, "online": online, "timestamp": time.time()}
        for connection_id in targets:
            self._enqueue(connection_id, EVENT_PRESENCE, payload)

        logger.debug(
            "Presence broadcast queued", user_id=user_id, online=online, targets=len(targets)
        )
        return len(targets)

    def notify_typing(self, from_user_id: str, to_user_id: str, is_typing: bool) -> int:
        """Transient indicator for the recipient only; a newer state replaces a queued one."""
        targets = self.registry.connections_for(to_user_id)
        payload = {"from_user_id": from_user_id, "is_typing": bool(is_typing)}
        for connection_id in targets:
            self._enqueue(connection_id, EVENT_TYPING, payload, replace_key=from_user_id)
        return len(targets)

    def push_to_connection(self, connection_id: str, event: str, data: Any) -> None:
        self._enqueue(connection_id, event, data)

    # ------------------------------------------------------------------
    # Outbox handling
    # ------------------------------------------------------------------

    def _enqueue(
        self, connection_id: str, event: str, data: Any, replace_key: str | None = None
    ) -> None:
        queue = self._outbox.setdefault(connection_id, [])

        if replace_key is not None:
            queue[:] = [
                item
                for item in queue
                if not (item["event"] == event and item.get("_replace_key") == replace_key)
            ]
            queue.append({"event": event, "data": data, "_replace_key": replace_key})
        else:
            queue.append({"event": event, "data": data})

        if connection_id not in self._drain_tasks:
            self._drain_tasks[connection_id] = asyncio.create_task(self._drain(connection_id))

    async def _drain(self, connection_id: str) -> None:
        try:
            await asyncio.sleep(self.coalesce_seconds)
            while True:
                events = self._outbox.pop(connection_id, None)
                if not events:
                    break
                await self.channel.send(connection_id, self._frame(events))

        except PushFailed as e:
            dropped = len(self._outbox.pop(connection_id, []))
            logger.warning(
                "Push failed, treating connection as disconnected",
                connection_id=connection_id,
                reason=e.reason,
                dropped_events=dropped,
            )
            self._spawn_dead_handler(connection_id)

        except Exception as e:
            self._outbox.pop(connection_id, None)
            logger.error(
                "Unexpected delivery error",
                connection_id=connection_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._spawn_dead_handler(connection_id)

        finally:
            self._drain_tasks.pop(connection_id, None)

    @staticmethod
    def _frame(events: list[dict[str, Any]]) -> dict[str, Any]:
        clean = [{"event": item["event"], "data": item["data"]} for item in events]
        if len(clean) == 1:
            return clean[0]
        return {"event": EVENT_BATCH, "data": clean}

    def _spawn_dead_handler(self, connection_id: str) -> None:
        if self._on_dead_connection is None:
            return
        task = asyncio.create_task(self._on_dead_connection(connection_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def drop(self, connection_id: str) -> None:
        """Forget anything still queued for a connection that went away."""
        self._outbox.pop(connection_id, None)

    def pending(self, connection_id: str) -> int:
        return len(self._outbox.get(connection_id, ()))

    async def flush(self) -> None:
        """Wait until every outbox is drained and dead-connection cleanups ran."""
        while True:
            tasks = [
                task
                for task in (*self._drain_tasks.values(), *self._background)
                if not task.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._drain_tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_tasks.clear()
        self._background.clear()
        self._outbox.clear()
        logger.info("Delivery router closed")
