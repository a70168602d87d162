"""
Message Store - send, read and mutate direct messages.

Persists through a MessageRepository chosen at startup, then hands the result
to the Delivery Router for real-time push and to the cache facade for
opportunistic conversation-cache maintenance. Push and cache are best-effort:
the caller's confirmation is the returned Message.

Mutations are limited to:
- seen: False -> True
- is_unsent: False -> True (content blanked, sender only)
- deleted_for: append-only, idempotent, per viewer
"""

import uuid
from datetime import UTC, datetime

from app.infrastructure.observability.logging import get_logger
from app.models.domain.message_domain import Message
from app.repositories.message_repository import MessageRepository
from app.services.cache_service import CacheService
from app.services.messaging.errors import ForbiddenError, NotFoundError, ValidationError
from app.services.presence.presence_store import PresenceStore
from app.services.realtime.delivery_router import DeliveryRouter

logger = get_logger(__name__)


def _require(value, field: str) -> str:
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing {field}", field=field)
    return value


class MessageService:
    def __init__(
        self,
        repository: MessageRepository,
        presence: PresenceStore,
        router: DeliveryRouter | None = None,
        cache: CacheService | None = None,
    ):
        self.repository = repository
        self.presence = presence
        self.router = router
        self.cache = cache

    async def send(self, sender_id: str, recipient_id: str, content: str) -> Message:
        """
        Create and persist a message, then push it to both participants.

        seen starts True for self-messages and when the recipient is online at
        send time. The online check is best-effort: a push can still be lost
        after it, and clients can always mark seen explicitly.

        Raises:
            ValidationError: sender, recipient or content missing
        """
        _require(sender_id, "from")
        _require(recipient_id, "to")
        _require(content, "content")

        if sender_id == recipient_id:
            seen = True
        else:
            seen = await self.presence.is_online(recipient_id)

        now = datetime.now(UTC)
        message = Message(
            id=uuid.uuid4().hex,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            created_at=now,
            updated_at=now,
            seen=seen,
        )

        stored = await self.repository.insert(message)

        logger.info(
            "Message sent",
            message_id=stored.id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            seen=stored.seen,
        )

        if self.router is not None:
            self.router.deliver(stored)
        await self._invalidate(stored)

        # Sending is activity; keep the sender's presence fresh
        came_online = await self.presence.heartbeat(sender_id)
        if came_online and self.router is not None:
            self.router.broadcast_presence(sender_id, True)

        return stored

    async def get_conversation(self, user_a: str, user_b: str, viewer_id: str) -> list[Message]:
        """Messages between the pair, oldest first, minus those viewer deleted for themselves."""
        _require(user_a, "user_a")
        _require(user_b, "user_b")
        _require(viewer_id, "viewer_id")

        if self.cache is None or not self.cache.conversation_cache_enabled:
            return await self.repository.list_between(user_a, user_b, viewer_id)

        messages = await self.cache.get_conversation(user_a, user_b)
        if messages is None:
            generation = await self.cache.conversation_generation(user_a, user_b)
            messages = await self.repository.list_between(user_a, user_b)
            await self.cache.cache_conversation(user_a, user_b, messages, generation)

        return [m for m in sorted(messages, key=Message.sort_key) if m.visible_to(viewer_id)]

    async def get_message(self, message_id: str) -> Message:
        _require(message_id, "message_id")
        message = await self.repository.get(message_id)
        if message is None:
            raise NotFoundError("Message not found", message_id=message_id)
        return message

    async def mark_seen(self, message_id: str) -> Message:
        """
        Idempotently set seen, notify the sender's devices and push the
        updated message to both participants.

        Raises:
            NotFoundError: message does not exist
        """
        _require(message_id, "message_id")

        updated = await self.repository.mark_seen(message_id)
        if updated is None:
            raise NotFoundError("Message not found", message_id=message_id)

        logger.info("Message marked seen", message_id=message_id)

        if self.router is not None:
            self.router.notify_seen(updated)
            self.router.deliver(updated)
        await self._invalidate(updated)
        return updated

    async def delete_for_me(self, message_id: str, user_id: str) -> Message:
        """
        Hide a message from user_id's view only. Repeat calls change nothing.

        Raises:
            NotFoundError: message does not exist
        """
        _require(message_id, "message_id")
        _require(user_id, "user_id")

        updated = await self.repository.add_deleted_for(message_id, user_id)
        if updated is None:
            raise NotFoundError("Message not found", message_id=message_id)

        logger.info("Message deleted for user", message_id=message_id, user_id=user_id)
        await self._invalidate(updated)
        return updated

    async def unsend(self, message_id: str, requester_id: str) -> Message:
        """
        Blank the content and flag the message as unsent.

        A viewer's earlier delete_for_me still hides it from that viewer.

        Raises:
            NotFoundError: message does not exist
            ForbiddenError: requester is not the original sender
        """
        _require(message_id, "message_id")
        _require(requester_id, "requester_id")

        message = await self.repository.get(message_id)
        if message is None:
            raise NotFoundError("Message not found", message_id=message_id)

        if message.sender_id != requester_id:
            logger.warning(
                "Unsend rejected for non-sender",
                message_id=message_id,
                requester_id=requester_id,
            )
            raise ForbiddenError("Only the sender can unsend a message", message_id=message_id)

        updated = await self.repository.mark_unsent(message_id)
        if updated is None:
            raise NotFoundError("Message not found", message_id=message_id)

        logger.info("Message unsent", message_id=message_id, sender_id=requester_id)

        if self.router is not None:
            self.router.deliver(updated)
        await self._invalidate(updated)
        return updated

    async def _invalidate(self, message: Message) -> None:
        if self.cache is not None:
            await self.cache.invalidate_conversation(message.sender_id, message.recipient_id)
