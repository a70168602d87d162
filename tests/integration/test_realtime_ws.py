"""
WebSocket tests: identify, message push to every device, typing and errors.
"""

import time

import jwt

from app.config import settings


def _identify(websocket, user_id: str) -> None:
    websocket.send_json({"event": "identify", "data": {"userId": user_id}})


def test_identify_receives_online_users(client, wait_for_event):
    with client.websocket_connect("/ws") as ws:
        _identify(ws, "alice")

        online = wait_for_event(ws, "online_users")

        assert online["data"]["users"] == ["alice"]


def test_message_reaches_every_device(client, login, wait_for_event):
    with client.websocket_connect("/ws") as phone, client.websocket_connect("/ws") as laptop:
        _identify(phone, "alice")
        wait_for_event(phone, "online_users")
        _identify(laptop, "alice")
        wait_for_event(laptop, "online_users")

        login("bob")
        sent = client.post("/messages", json={"to": "alice", "text": "yo"}).json()

        # alice was connected, so the message counts as seen on arrival
        assert sent["seen"] is True
        for ws in (phone, laptop):
            pushed = wait_for_event(ws, "message")
            assert pushed["data"]["id"] == sent["id"]
            assert pushed["data"]["sender_id"] == "bob"


def test_seen_is_pushed_to_sender(client, login, wait_for_event):
    login("alice")
    message_id = client.post("/messages", json={"to": "bob", "text": "hi"}).json()["id"]

    with client.websocket_connect("/ws") as ws:
        _identify(ws, "alice")
        wait_for_event(ws, "online_users")

        login("bob")
        client.post(f"/messages/{message_id}/seen")

        seen = wait_for_event(ws, "seen")
        assert seen["data"]["message_id"] == message_id
        assert seen["data"]["seen_by"] == "bob"


def test_presence_broadcast_on_connect_and_disconnect(client, wait_for_event):
    with client.websocket_connect("/ws") as watcher:
        _identify(watcher, "bob")
        wait_for_event(watcher, "online_users")

        with client.websocket_connect("/ws") as ws:
            _identify(ws, "alice")
            came_online = wait_for_event(watcher, "presence")
            assert came_online["data"] == {
                "user_id": "alice",
                "online": True,
                "timestamp": came_online["data"]["timestamp"],
            }

        went_offline = wait_for_event(watcher, "presence")
        assert went_offline["data"]["user_id"] == "alice"
        assert went_offline["data"]["online"] is False


def test_typing_indicator(client, wait_for_event):
    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        _identify(bob, "bob")
        wait_for_event(bob, "online_users")
        _identify(alice, "alice")
        wait_for_event(alice, "online_users")

        alice.send_json({"event": "typing", "data": {"to": "bob", "isTyping": True}})

        typing = wait_for_event(bob, "typing")
        assert typing["data"] == {"from_user_id": "alice", "is_typing": True}


def test_rejected_event_keeps_connection_usable(client, wait_for_event):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "typing", "data": {"to": "bob", "isTyping": True}})

        error = wait_for_event(ws, "error")

        assert error["data"]["event"] == "typing"
        assert "not identified" in error["data"]["message"]

        # The rejected frame leaves the connection usable
        _identify(ws, "alice")
        assert wait_for_event(ws, "online_users")["data"]["users"] == ["alice"]


def test_invalid_frames_get_error_event(client, wait_for_event):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert wait_for_event(ws, "error")["data"]["message"] == "Invalid JSON"

        ws.send_json({"event": "dance"})
        assert "Unknown event" in wait_for_event(ws, "error")["data"]["message"]

        # Still usable afterwards
        _identify(ws, "alice")
        assert wait_for_event(ws, "online_users")["data"]["users"] == ["alice"]


def test_verified_identity_with_token(client, monkeypatch, wait_for_event):
    secret = "socket-secret-with-enough-length-for-hs256"
    monkeypatch.setattr(settings, "JWT_SECRET", secret)
    monkeypatch.setattr(settings, "JWT_AUDIENCE", None)
    monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_SOCKET_IDENTITY", False)
    token = jwt.encode({"sub": "alice", "exp": int(time.time()) + 60}, secret, algorithm="HS256")

    with client.websocket_connect("/ws") as ws:
        _identify(ws, "alice")
        assert wait_for_event(ws, "error")["data"]["message"] == "Missing token"

        ws.send_json({"event": "identify", "data": {"token": token}})
        assert wait_for_event(ws, "online_users")["data"]["users"] == ["alice"]
