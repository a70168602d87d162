from datetime import datetime

from pydantic import BaseModel, Field


def conversation_key(user_a: str, user_b: str) -> tuple[str, str]:
    """Unordered participant pair, normalised so (a, b) == (b, a)."""
    return tuple(sorted((str(user_a), str(user_b))))


class Message(BaseModel):
    """Direct message between two users. Content is opaque (already encoded)."""

    id: str
    sender_id: str
    recipient_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    seen: bool = False
    is_unsent: bool = False
    deleted_for: list[str] = Field(default_factory=list)

    # Store-assigned tiebreak for messages sharing a created_at
    sequence: int = 0

    def participants(self) -> set[str]:
        return {self.sender_id, self.recipient_id}

    def involves(self, user_a: str, user_b: str) -> bool:
        return conversation_key(self.sender_id, self.recipient_id) == conversation_key(
            user_a, user_b
        )

    def visible_to(self, viewer_id: str) -> bool:
        return viewer_id not in self.deleted_for

    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.sequence)
