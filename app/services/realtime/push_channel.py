"""
Push capability used by the Delivery Router.

The router only knows connection ids and JSON frames. A channel either hands
the frame to the transport or raises PushFailed; it never retries.
"""

from typing import Any, Protocol

from fastapi import WebSocket, status
from starlette.websockets import WebSocketState

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PushFailed(Exception):
    """The connection is gone or errored while sending."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"push to {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason


class PushChannel(Protocol):
    async def send(self, connection_id: str, frame: dict[str, Any]) -> None: ...


class WebSocketPushChannel:
    """Maps connection ids to accepted FastAPI websockets."""

    def __init__(self):
        self._sockets: dict[str, WebSocket] = {}

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket
        logger.debug("Socket attached", connection_id=connection_id, sockets=len(self._sockets))

    def detach(self, connection_id: str) -> WebSocket | None:
        websocket = self._sockets.pop(connection_id, None)
        if websocket is not None:
            logger.debug("Socket detached", connection_id=connection_id)
        return websocket

    async def close(self, connection_id: str, code: int = status.WS_1011_INTERNAL_ERROR) -> None:
        """Detach and close a socket the server gave up on, ending its receive loop."""
        websocket = self.detach(connection_id)
        if websocket is None or websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.close(code=code)
        except Exception as e:
            logger.debug("Socket already gone on close", connection_id=connection_id, error=str(e))

    async def send(self, connection_id: str, frame: dict[str, Any]) -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            raise PushFailed(connection_id, "unknown connection")

        if websocket.application_state != WebSocketState.CONNECTED:
            raise PushFailed(connection_id, "socket not connected")

        try:
            await websocket.send_json(frame)
        except Exception as e:
            raise PushFailed(connection_id, str(e)) from e
