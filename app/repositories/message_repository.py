"""
Persistence layer for direct messages.

Three implementations behind one interface:
- PostgresMessageRepository: durable store, one UPDATE ... RETURNING per mutation
- MemoryMessageRepository: process-lifetime ordered list, lost on restart
- FallbackMessageRepository: Postgres first, memory when Postgres is unreachable

build_message_repository() picks one at startup so the service layer never
branches on connectivity itself.
"""

import itertools
from datetime import UTC, datetime
from typing import Protocol

import psycopg

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from app.infrastructure.observability.logging import get_logger
from app.models.domain.message_domain import Message, conversation_key
from app.services.messaging.errors import BackingStoreUnavailable, ServiceUnavailableError

logger = get_logger(__name__)


class MessageRepository(Protocol):
    name: str

    async def insert(self, message: Message) -> Message: ...

    async def get(self, message_id: str) -> Message | None: ...

    async def list_between(
        self, user_a: str, user_b: str, viewer_id: str | None = None
    ) -> list[Message]: ...

    async def mark_seen(self, message_id: str) -> Message | None: ...

    async def add_deleted_for(self, message_id: str, user_id: str) -> Message | None: ...

    async def mark_unsent(self, message_id: str) -> Message | None: ...


def _is_outage(error: DatabaseError) -> bool:
    cause = error.__cause__
    return isinstance(cause, (psycopg.OperationalError, psycopg.InterfaceError, RuntimeError))


class PostgresMessageRepository:
    """Durable message storage in the `messages` table."""

    name = "postgres"

    SELECT_COLUMNS = """
        id, sequence, sender_id, recipient_id, content,
        seen, is_unsent, deleted_for, created_at, updated_at
    """

    SCHEMA_STATEMENTS = (
        """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            sequence BIGSERIAL,
            sender_id TEXT NOT NULL,
            recipient_id TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            seen BOOLEAN NOT NULL DEFAULT FALSE,
            is_unsent BOOLEAN NOT NULL DEFAULT FALSE,
            deleted_for TEXT[] NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages (
            LEAST(sender_id, recipient_id),
            GREATEST(sender_id, recipient_id),
            created_at,
            sequence
        )
        """,
    )

    @classmethod
    def _row_to_message(cls, row: dict | None) -> Message | None:
        if not row:
            return None

        return Message(
            id=str(row["id"]),
            sequence=int(row["sequence"]),
            sender_id=str(row["sender_id"]),
            recipient_id=str(row["recipient_id"]),
            content=row["content"] or "",
            seen=bool(row["seen"]),
            is_unsent=bool(row["is_unsent"]),
            deleted_for=list(row.get("deleted_for") or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def _fetch_one(self, query: str, params: tuple) -> dict | None:
        try:
            return await fetch_one(query, params)
        except DatabaseError as e:
            if _is_outage(e):
                raise BackingStoreUnavailable(str(e), backend=self.name) from e
            raise

    async def ensure_schema(self) -> None:
        """Create the messages table and index if they do not exist yet."""
        for statement in self.SCHEMA_STATEMENTS:
            await execute_query(statement)
        logger.info("Messages schema ensured")

    async def insert(self, message: Message) -> Message:
        query = f"""
            INSERT INTO messages (
                id, sender_id, recipient_id, content,
                seen, is_unsent, deleted_for, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await self._fetch_one(
            query,
            (
                message.id,
                message.sender_id,
                message.recipient_id,
                message.content,
                message.seen,
                message.is_unsent,
                message.deleted_for,
                message.created_at,
                message.updated_at,
            ),
        )
        if not row:
            raise DatabaseError("Failed to insert message", operation="insert")
        return self._row_to_message(row)

    async def get(self, message_id: str) -> Message | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM messages WHERE id = %s"
        return self._row_to_message(await self._fetch_one(query, (message_id,)))

    async def list_between(
        self, user_a: str, user_b: str, viewer_id: str | None = None
    ) -> list[Message]:
        low, high = conversation_key(user_a, user_b)
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM messages
            WHERE LEAST(sender_id, recipient_id) = %s
              AND GREATEST(sender_id, recipient_id) = %s
              AND (%s::text IS NULL OR NOT (%s = ANY(deleted_for)))
            ORDER BY created_at ASC, sequence ASC
        """
        try:
            rows = await fetch_all(query, (low, high, viewer_id, viewer_id))
        except DatabaseError as e:
            if _is_outage(e):
                raise BackingStoreUnavailable(str(e), backend=self.name) from e
            raise
        return [self._row_to_message(row) for row in rows]

    async def _update_or_get(self, query: str, params: tuple, message_id: str) -> Message | None:
        """Run a guarded UPDATE; when the guard skips the row, return it unchanged."""
        row = await self._fetch_one(query, params)
        if row:
            return self._row_to_message(row)
        return await self.get(message_id)

    async def mark_seen(self, message_id: str) -> Message | None:
        query = f"""
            UPDATE messages
            SET seen = TRUE, updated_at = NOW()
            WHERE id = %s AND seen = FALSE
            RETURNING {self.SELECT_COLUMNS}
        """
        return await self._update_or_get(query, (message_id,), message_id)

    async def add_deleted_for(self, message_id: str, user_id: str) -> Message | None:
        query = f"""
            UPDATE messages
            SET deleted_for = array_append(deleted_for, %s), updated_at = NOW()
            WHERE id = %s AND NOT (%s = ANY(deleted_for))
            RETURNING {self.SELECT_COLUMNS}
        """
        return await self._update_or_get(query, (user_id, message_id, user_id), message_id)

    async def mark_unsent(self, message_id: str) -> Message | None:
        query = f"""
            UPDATE messages
            SET is_unsent = TRUE, content = '', updated_at = NOW()
            WHERE id = %s AND is_unsent = FALSE
            RETURNING {self.SELECT_COLUMNS}
        """
        return await self._update_or_get(query, (message_id,), message_id)


class MemoryMessageRepository:
    """Ordered in-process list. Same guarantees as Postgres except durability."""

    name = "memory"

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._sequence = itertools.count(1)

    def __len__(self) -> int:
        return len(self._messages)

    async def insert(self, message: Message) -> Message:
        stored = message.model_copy(update={"sequence": next(self._sequence)}, deep=True)
        self._messages[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def list_between(
        self, user_a: str, user_b: str, viewer_id: str | None = None
    ) -> list[Message]:
        matches = [
            message
            for message in self._messages.values()
            if message.involves(user_a, user_b)
            and (viewer_id is None or message.visible_to(viewer_id))
        ]
        matches.sort(key=Message.sort_key)
        return [message.model_copy(deep=True) for message in matches]

    def _touch(self, message: Message) -> Message:
        message.updated_at = datetime.now(UTC)
        return message.model_copy(deep=True)

    async def mark_seen(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            return None
        if message.seen:
            return message.model_copy(deep=True)
        message.seen = True
        return self._touch(message)

    async def add_deleted_for(self, message_id: str, user_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            return None
        if user_id in message.deleted_for:
            return message.model_copy(deep=True)
        message.deleted_for.append(user_id)
        return self._touch(message)

    async def mark_unsent(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            return None
        if message.is_unsent:
            return message.model_copy(deep=True)
        message.is_unsent = True
        message.content = ""
        return self._touch(message)


class FallbackMessageRepository:
    """Route each call to the primary; degrade to the fallback on outages."""

    def __init__(self, primary: MessageRepository, fallback: MessageRepository | None = None):
        self.primary = primary
        self.fallback = fallback

    @property
    def name(self) -> str:
        if self.fallback is None:
            return self.primary.name
        return f"{self.primary.name}+{self.fallback.name}"

    async def _call(self, operation: str, *args):
        try:
            return await getattr(self.primary, operation)(*args)
        except BackingStoreUnavailable as e:
            if self.fallback is None:
                logger.error(
                    "Message store unavailable and no fallback configured",
                    operation=operation,
                    error=str(e),
                )
                raise ServiceUnavailableError(
                    "Message store temporarily unavailable", operation=operation
                ) from e

            logger.warning(
                "Message store unavailable, using in-process fallback",
                operation=operation,
                backend=e.backend,
                error=str(e),
            )
            return await getattr(self.fallback, operation)(*args)

    async def insert(self, message: Message) -> Message:
        return await self._call("insert", message)

    async def get(self, message_id: str) -> Message | None:
        return await self._call("get", message_id)

    async def list_between(
        self, user_a: str, user_b: str, viewer_id: str | None = None
    ) -> list[Message]:
        return await self._call("list_between", user_a, user_b, viewer_id)

    async def mark_seen(self, message_id: str) -> Message | None:
        return await self._call("mark_seen", message_id)

    async def add_deleted_for(self, message_id: str, user_id: str) -> Message | None:
        return await self._call("add_deleted_for", message_id, user_id)

    async def mark_unsent(self, message_id: str) -> Message | None:
        return await self._call("mark_unsent", message_id)


def build_message_repository(
    database_ready: bool, fallback_enabled: bool = True
) -> MessageRepository:
    """Choose the message backend once, at startup."""
    if not database_ready:
        logger.warning("Durable message store not available, messages kept in memory")
        return MemoryMessageRepository()

    fallback = MemoryMessageRepository() if fallback_enabled else None
    repository = FallbackMessageRepository(PostgresMessageRepository(), fallback)
    logger.info("Message repository selected", backend=repository.name)
    return repository
