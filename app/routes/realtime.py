"""
Realtime WebSocket Route
Accepts the socket, assigns a connection id and feeds inbound events to the
RealtimeHub. Outbound traffic goes through the Delivery Router only.

Inbound frames are JSON objects: {"event": "<name>", "data": {...}}
    identify   {"userId": "..."} or {"token": "<jwt>"}
    typing     {"to": "...", "isTyping": true}
    activity   {}
    heartbeat  {}
    joinRoom   {"roomId": "..."}
    leaveRoom  {"roomId": "..."}
"""

import json
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from app.auth.verify import user_id_from_claims, verify_jwt
from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.messaging.errors import MessagingError, ValidationError
from app.services.realtime.delivery_router import EVENT_ERROR
from app.services.realtime.hub import RealtimeHub
from app.services.realtime.push_channel import WebSocketPushChannel

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


def _field(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def resolve_identity(data: dict[str, Any]) -> str:
    """Turn an identify payload into a user id, verifying the token when given."""
    token = data.get("token")
    if token:
        user_id = user_id_from_claims(verify_jwt(token))
        if not user_id:
            raise ValidationError("Token carries no user id", field="token")
        return user_id

    if not settings.ALLOW_UNVERIFIED_SOCKET_IDENTITY:
        raise ValidationError("Missing token", field="token")

    user_id = _field(data, "userId", "user_id")
    if not isinstance(user_id, str) or not user_id:
        raise ValidationError("Missing userId", field="userId")
    return user_id


def _require_identified(hub: RealtimeHub, connection_id: str) -> str:
    user_id = hub.registry.user_for(connection_id)
    if user_id is None:
        raise ValidationError("Connection not identified", field="identify")
    return user_id


async def handle_event(hub: RealtimeHub, connection_id: str, event: str, data: Any) -> None:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Event data must be an object", field="data")

    if event == "identify":
        await hub.identify(connection_id, resolve_identity(data))

    elif event == "typing":
        _require_identified(hub, connection_id)
        to_user_id = _field(data, "to", "toUserId")
        if not isinstance(to_user_id, str) or not to_user_id:
            raise ValidationError("Missing to", field="to")
        hub.typing(connection_id, to_user_id, bool(_field(data, "isTyping", "is_typing")))

    elif event == "activity":
        _require_identified(hub, connection_id)
        await hub.activity(connection_id)

    elif event == "heartbeat":
        user_id = _require_identified(hub, connection_id)
        await hub.heartbeat(user_id, connection_id)

    elif event in ("joinRoom", "leaveRoom"):
        room_id = _field(data, "roomId", "room_id")
        if not isinstance(room_id, str) or not room_id:
            raise ValidationError("Missing roomId", field="roomId")
        if event == "joinRoom":
            hub.join_room(connection_id, room_id)
        else:
            hub.leave_room(connection_id, room_id)

    else:
        raise ValidationError(f"Unknown event: {event}", field="event")


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket):
    services = websocket.app.state.services
    hub: RealtimeHub = services.hub
    connection_id = uuid.uuid4().hex

    channel = services.channel if isinstance(services.channel, WebSocketPushChannel) else None

    await websocket.accept()
    if channel is not None:
        channel.attach(connection_id, websocket)
    logger.info("WebSocket connected", connection_id=connection_id)

    try:
        # The hub closes the socket when a push to it fails
        while websocket.application_state == WebSocketState.CONNECTED:
            event = None
            try:
                frame = await websocket.receive_json()
                if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                    raise ValidationError("Frame must be {event, data}", field="event")
                event = frame["event"]
                await handle_event(hub, connection_id, event, frame.get("data"))

            except json.JSONDecodeError:
                hub.router.push_to_connection(
                    connection_id, EVENT_ERROR, {"message": "Invalid JSON", "event": None}
                )
            except MessagingError as e:
                logger.warning(
                    "Rejected socket event",
                    connection_id=connection_id,
                    socket_event=event,
                    error=e.message,
                )
                hub.router.push_to_connection(
                    connection_id, EVENT_ERROR, {"message": e.message, "event": event}
                )
            except HTTPException as e:
                hub.router.push_to_connection(
                    connection_id, EVENT_ERROR, {"message": e.detail, "event": event}
                )

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected", connection_id=connection_id)
    except Exception as e:
        logger.error("WebSocket handler failed", connection_id=connection_id, error=str(e))
    finally:
        if channel is not None:
            channel.detach(connection_id)
        await hub.disconnect(connection_id)
