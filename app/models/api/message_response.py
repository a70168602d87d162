# app/models/api/message_response.py
from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.message_domain import Message


class MessageResponse(BaseModel):
    """A message as returned to a participant."""

    id: str
    sender_id: str
    recipient_id: str
    content: str = Field(..., description="Encoded content, or plaintext when decode=true")
    created_at: datetime
    updated_at: datetime
    seen: bool
    is_unsent: bool
    is_encrypted: bool = False

    @classmethod
    def from_domain(cls, message: Message, content: str | None = None, is_encrypted: bool = False):
        return cls(
            id=message.id,
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            content=message.content if content is None else content,
            created_at=message.created_at,
            updated_at=message.updated_at,
            seen=message.seen,
            is_unsent=message.is_unsent,
            is_encrypted=is_encrypted,
        )


class ConversationResponse(BaseModel):
    """Response for GET /messages/{other_user_id}"""

    other_user_id: str
    messages: list[MessageResponse]
    count: int


class PresenceResponse(BaseModel):
    user_id: str
    online: bool
    last_heartbeat: float | None = None
    expires_at: float | None = None


class OnlineUsersResponse(BaseModel):
    users: list[str]
    count: int


class HeartbeatResponse(BaseModel):
    success: bool
    user_id: str
    online: bool = True
