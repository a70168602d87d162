"""
HTTP tests for the messaging routes, running the real app with in-memory backends.
"""

import pytest

from app.config import settings
from app.services.infrastructure.encryption_service import generate_new_key


def _send(client, to: str, text: str):
    return client.post("/messages", json={"to": to, "text": text})


def test_send_message(client, login):
    login("alice")

    response = _send(client, "bob", "hi")

    assert response.status_code == 201
    data = response.json()
    assert data["sender_id"] == "alice"
    assert data["recipient_id"] == "bob"
    assert data["seen"] is False
    assert data["is_unsent"] is False
    assert "deleted_for" not in data


def test_send_to_online_recipient_is_seen(client, login):
    login("bob")
    assert client.post("/presence/heartbeat").status_code == 200

    login("alice")
    response = _send(client, "bob", "hi")

    assert response.json()["seen"] is True


def test_send_to_self_is_seen(client, login):
    login("alice")

    assert _send(client, "alice", "memo").json()["seen"] is True


@pytest.mark.parametrize("body", [{"to": "bob"}, {"to": "", "text": "hi"}, {"text": "hi"}])
def test_send_validation(client, login, body):
    login("alice")

    response = client.post("/messages", json=body)

    assert response.status_code == 422


def test_conversation_from_both_sides(client, login):
    login("alice")
    _send(client, "bob", "one")
    login("bob")
    _send(client, "alice", "two")

    response = client.get("/messages/alice")

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert [m["content"] for m in data["messages"]] == ["one", "two"]


def test_mark_seen(client, login):
    login("alice")
    message_id = _send(client, "bob", "hi").json()["id"]

    login("bob")
    response = client.post(f"/messages/{message_id}/seen")

    assert response.status_code == 200
    assert response.json()["seen"] is True


def test_non_participant_cannot_touch_message(client, login):
    login("alice")
    message_id = _send(client, "bob", "hi").json()["id"]

    login("mallory")
    assert client.post(f"/messages/{message_id}/seen").status_code == 403
    assert client.post(f"/messages/{message_id}/delete-for-me").status_code == 403


def test_unknown_message_is_404(client, login):
    login("alice")

    assert client.post("/messages/missing/seen").status_code == 404
    assert client.post("/messages/missing/unsend").status_code == 404


def test_unsend_sender_only(client, login):
    login("alice")
    message_id = _send(client, "bob", "oops").json()["id"]

    login("bob")
    forbidden = client.post(f"/messages/{message_id}/unsend")
    assert forbidden.status_code == 403

    login("alice")
    response = client.post(f"/messages/{message_id}/unsend")
    assert response.status_code == 200
    assert response.json()["is_unsent"] is True
    assert response.json()["content"] == ""


def test_delete_for_me_is_per_viewer(client, login):
    login("alice")
    message_id = _send(client, "bob", "hi").json()["id"]

    assert client.post(f"/messages/{message_id}/delete-for-me").status_code == 200
    assert client.post(f"/messages/{message_id}/delete-for-me").status_code == 200
    assert client.get("/messages/bob").json()["count"] == 0

    login("bob")
    assert client.get("/messages/alice").json()["count"] == 1


def test_encoded_content_and_decode(client, login, monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", generate_new_key())
    login("alice")

    sent = _send(client, "bob", "secret plans").json()
    assert sent["is_encrypted"] is True
    assert sent["content"] != "secret plans"

    login("bob")
    raw = client.get("/messages/alice").json()["messages"][0]
    decoded = client.get("/messages/alice", params={"decode": "true"}).json()["messages"][0]

    assert raw["content"] == sent["content"]
    assert decoded["content"] == "secret plans"
    assert decoded["is_encrypted"] is False


def test_message_heartbeat(client, login):
    login("alice")

    response = client.post("/messages/heartbeat")

    assert response.status_code == 200
    assert response.json() == {"success": True, "user_id": "alice", "online": True}


def test_requires_authentication(client):
    from app.main import app

    app.dependency_overrides.clear()

    response = client.get("/messages/bob")

    assert response.status_code in (401, 403)
