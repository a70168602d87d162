# app/models/api/message_request.py
from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    """Request body for POST /messages."""

    to: str = Field(..., min_length=1, description="Recipient user id")
    text: str = Field(..., min_length=1, max_length=10000, description="Plaintext message body")


class PresenceStatusRequest(BaseModel):
    """Request body for POST /presence/status (bulk lookup)."""

    user_ids: list[str] = Field(..., max_length=500)
