import pytest
from fastapi.testclient import TestClient
from jose import jwt
from starlette.websockets import WebSocketDisconnect

from chatsync.core.config import settings
from chatsync.models.chat import Profile
from chatsync.services.engine import ChatEngine
from main import create_app

from helpers import PNG


def _token(user_id):
    return jwt.encode({"sub": user_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _auth(user_id):
    return {"Authorization": f"Bearer {_token(user_id)}"}


@pytest.fixture
def chat_engine(store, feed, blob, notifier, test_settings, session_factory):
    with session_factory() as session:
        session.add_all(
            [
                Profile(id="alice", display_name="Alice", handle="alice"),
                Profile(id="bob", display_name="Bob", handle="bob"),
            ]
        )
        session.commit()
    return ChatEngine(
        store,
        feed,
        blob=blob,
        notifier=notifier,
        config=test_settings,
        session_factory=session_factory,
    )


@pytest.fixture
def client(chat_engine):
    with TestClient(create_app(chat_engine)) as c:
        yield c


def _open_direct(client):
    resp = client.post(
        "/api/chat/conversations/direct", json={"other_user_id": "bob"}, headers=_auth("alice")
    )
    assert resp.status_code == 200
    return resp.json()["conversation_id"]


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/chat/conversations").status_code == 401
    resp = client.get("/api/chat/conversations", headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401


def test_send_then_list_shows_unread(client):
    cid = _open_direct(client)

    resp = client.post(
        f"/api/chat/conversations/{cid}/messages", json={"content": "Hello"}, headers=_auth("alice")
    )
    assert resp.status_code == 200
    message_id = resp.json()["message_id"]

    body = client.get("/api/chat/conversations", headers=_auth("bob")).json()
    assert body["total_unread"] == 1
    [conversation] = body["conversations"]
    assert conversation["id"] == cid
    assert conversation["last_message"]["content"] == "Hello"
    assert conversation["other_user"]["display_name"] == "Alice"

    messages = client.get(f"/api/chat/conversations/{cid}/messages", headers=_auth("bob")).json()
    assert [m["id"] for m in messages["messages"]] == [message_id]


def test_non_member_cannot_read_messages(client):
    cid = _open_direct(client)
    resp = client.get(f"/api/chat/conversations/{cid}/messages", headers=_auth("mallory"))
    assert resp.status_code == 403


def test_only_the_sender_may_edit(client):
    cid = _open_direct(client)
    message_id = client.post(
        f"/api/chat/conversations/{cid}/messages", json={"content": "teh"}, headers=_auth("alice")
    ).json()["message_id"]

    assert client.patch(
        f"/api/chat/messages/{message_id}", json={"content": "no"}, headers=_auth("bob")
    ).status_code == 403

    resp = client.patch(
        f"/api/chat/messages/{message_id}", json={"content": "the"}, headers=_auth("alice")
    )
    assert resp.status_code == 200
    assert resp.json()["is_edited"] is True
    assert client.patch(
        "/api/chat/messages/missing", json={"content": "x"}, headers=_auth("alice")
    ).status_code == 404


def test_mark_read_clears_unread(client):
    cid = _open_direct(client)
    client.post(f"/api/chat/conversations/{cid}/messages", json={"content": "Hi"}, headers=_auth("alice"))

    resp = client.post(f"/api/chat/conversations/{cid}/read", headers=_auth("bob"))
    assert resp.status_code == 200
    assert resp.json() == {"marked": True}

    body = client.get("/api/chat/conversations", headers=_auth("bob")).json()
    assert body["total_unread"] == 0


def test_blank_message_is_a_bad_request(client):
    cid = _open_direct(client)
    resp = client.post(
        f"/api/chat/conversations/{cid}/messages", json={"content": "   "}, headers=_auth("alice")
    )
    assert resp.status_code == 400
    assert "detail" in resp.json()


def test_upload_creates_image_message(client):
    cid = _open_direct(client)

    resp = client.post(
        f"/api/chat/conversations/{cid}/uploads",
        files={"file": ("cat.png", PNG, "image/png")},
        headers=_auth("alice"),
    )
    assert resp.status_code == 200

    [message] = client.get(f"/api/chat/conversations/{cid}/messages", headers=_auth("bob")).json()["messages"]
    assert message["message_type"] == "image"
    assert message["attachments"][0]["file_name"] == "cat.png"


def test_typing_round_trip(client):
    cid = _open_direct(client)
    assert client.post(f"/api/chat/conversations/{cid}/typing", headers=_auth("alice")).status_code == 200

    body = client.get(f"/api/chat/conversations/{cid}/typing", headers=_auth("bob")).json()
    assert body["text"] == "Alice is typing..."

    client.delete(f"/api/chat/conversations/{cid}/typing", headers=_auth("alice"))
    body = client.get(f"/api/chat/conversations/{cid}/typing", headers=_auth("bob")).json()
    assert body["users"] == []


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/ready").json() == {"status": "ready"}
    health = client.get("/health").json()
    assert health["checks"]["database"]["status"] == "healthy"
    assert client.get("/metrics").status_code == 200


def test_websocket_pushes_change_notices(client):
    cid = _open_direct(client)

    with client.websocket_connect(f"/api/chat/ws?token={_token('bob')}") as ws:
        ws.send_json({"type": "subscribe", "conversation_id": cid})
        assert ws.receive_json() == {"type": "subscribed", "conversation_id": cid}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        client.post(
            f"/api/chat/conversations/{cid}/messages", json={"content": "Hello"}, headers=_auth("alice")
        )
        scopes = set()
        for _ in range(10):
            notice = ws.receive_json()
            assert notice["type"] == "changed"
            scopes.add(notice["scope"])
            if "messages" in scopes:
                break
        assert "messages" in scopes


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/chat/ws?token=garbage") as ws:
            ws.receive_json()
