"""
Messaging API Routes
Thin HTTP adapters over the Message Store. Content is encoded here before it
reaches the store and decoded here only for a participant who asks for it.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import current_user_id
from app.dependencies import get_hub, get_message_service
from app.infrastructure.observability.logging import get_logger
from app.models.api.message_request import SendMessageRequest
from app.models.api.message_response import (
    ConversationResponse,
    HeartbeatResponse,
    MessageResponse,
)
from app.models.domain.message_domain import Message
from app.services.infrastructure.encryption_service import (
    EncryptionError,
    decode_content,
    encode_content,
    is_encryption_enabled,
)
from app.services.messaging.errors import ForbiddenError, MessagingError
from app.services.messaging.message_service import MessageService
from app.services.realtime.hub import RealtimeHub

logger = get_logger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def _http_error(error: MessagingError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


def _to_response(message: Message, decode: bool = False) -> MessageResponse:
    encrypted = is_encryption_enabled() and bool(message.content)
    if not decode:
        return MessageResponse.from_domain(message, is_encrypted=encrypted)

    try:
        return MessageResponse.from_domain(message, content=decode_content(message.content))
    except EncryptionError as e:
        logger.warning("Could not decode message content", message_id=message.id, error=str(e))
        return MessageResponse.from_domain(message, is_encrypted=encrypted)


async def _participant_message(
    service: MessageService, message_id: str, user_id: str
) -> Message:
    message = await service.get_message(message_id)
    if user_id not in message.participants():
        raise ForbiddenError("Not a participant of this message", message_id=message_id)
    return message


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Send a direct message from the authenticated user."""
    try:
        content = encode_content(request.text)
        message = await service.send(user_id, request.to, content)
        return _to_response(message)

    except EncryptionError as e:
        logger.error("Failed to encode message", user_id=user_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MessagingError as e:
        logger.warning("Send rejected", user_id=user_id, error=e.message)
        raise _http_error(e)
    except Exception as e:
        logger.error("Error sending message", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send message"
        )


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def message_heartbeat(
    user_id: str = Depends(current_user_id),
    hub: RealtimeHub = Depends(get_hub),
):
    """Keep the caller online while they are active in a chat."""
    await hub.heartbeat(user_id)
    return HeartbeatResponse(success=True, user_id=user_id)


@router.get("/{other_user_id}", response_model=ConversationResponse)
async def get_conversation(
    other_user_id: str,
    decode: bool = Query(False, description="Return decoded text instead of stored content"),
    user_id: str = Depends(current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Conversation between the caller and other_user_id, oldest first."""
    try:
        messages = await service.get_conversation(user_id, other_user_id, user_id)
    except MessagingError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(
            "Error loading conversation", user_id=user_id, other_user_id=other_user_id, error=str(e)
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load conversation",
        )

    return ConversationResponse(
        other_user_id=other_user_id,
        messages=[_to_response(m, decode=decode) for m in messages],
        count=len(messages),
    )


@router.post("/{message_id}/seen", response_model=MessageResponse)
async def mark_seen(
    message_id: str,
    user_id: str = Depends(current_user_id),
    service: MessageService = Depends(get_message_service),
):
    try:
        await _participant_message(service, message_id, user_id)
        return _to_response(await service.mark_seen(message_id))
    except MessagingError as e:
        raise _http_error(e)


@router.post("/{message_id}/delete-for-me", response_model=MessageResponse)
async def delete_for_me(
    message_id: str,
    user_id: str = Depends(current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Hide a message from the caller's own view."""
    try:
        await _participant_message(service, message_id, user_id)
        return _to_response(await service.delete_for_me(message_id, user_id))
    except MessagingError as e:
        raise _http_error(e)


@router.post("/{message_id}/unsend", response_model=MessageResponse)
async def unsend(
    message_id: str,
    user_id: str = Depends(current_user_id),
    service: MessageService = Depends(get_message_service),
):
    """Withdraw a message for everyone. Sender only."""
    try:
        return _to_response(await service.unsend(message_id, user_id))
    except MessagingError as e:
        logger.warning("Unsend failed", user_id=user_id, message_id=message_id, error=e.message)
        raise _http_error(e)
