"""HTTP and WebSocket surface, driven through Starlette's TestClient."""
import pytest
from fastapi.testclient import TestClient

from app import build_hub, create_app
from hub.collaborators import InMemoryAuthorizer, InMemoryIdentityService, InMemoryMessageStore
from hub.coordinator import Hub


@pytest.fixture
def identity():
    return InMemoryIdentityService()


@pytest.fixture
def client(identity):
    hub = Hub(
        identity,
        InMemoryAuthorizer(open_conversations=True),
        InMemoryMessageStore(),
        presence_debounce=3600,
        maintenance_interval=3600,
        history_limit=0,
    )
    with TestClient(create_app(hub=hub)) as test_client:
        yield test_client


def _authenticate(ws, user_id, token):
    ws.send_json({"type": "authenticate", "data": {"userId": user_id, "token": token}})
    return ws.receive_json()


def test_health_on_idle_hub(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "connections": 0,
        "authenticated_connections": 0,
        "online_users": 0,
        "conversations": 0,
    }


def test_unknown_conversation_is_404(client):
    response = client.get("/conversations/nowhere")
    assert response.status_code == 404
    assert response.json()["detail"] == "Conversation not found"


def test_offline_user_presence(client):
    response = client.get("/users/ghost/presence")
    assert response.status_code == 200
    assert response.json() == {"user_id": "ghost", "online": False, "connections": 0, "conversations": []}


def test_websocket_conversation_flow(client, identity):
    alice_token = identity.issue("alice")
    bob_token = identity.issue("bob")

    with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
        assert _authenticate(alice, "alice", alice_token) == {"type": "authenticated", "data": {"onlineUsers": ["alice"]}}
        assert _authenticate(bob, "bob", bob_token)["type"] == "authenticated"

        alice.send_json({"type": "join", "data": {"conversationId": "c1"}})
        assert alice.receive_json() == {"type": "joined", "data": {"conversationId": "c1"}}
        bob.send_json({"type": "join", "data": {"conversationId": "c1"}})
        assert bob.receive_json()["type"] == "joined"
        assert alice.receive_json() == {"type": "user_joined", "data": {"userId": "bob", "conversationId": "c1"}}

        alice.send_json({"type": "send_message", "data": {"conversationId": "c1", "body": "  hi bob  "}})
        for ws in (alice, bob):
            event = ws.receive_json()
            assert event["type"] == "new_message"
            assert event["data"]["message"]["body"] == "hi bob"
            assert event["data"]["message"]["sequence"] == 1

        bob.send_json({"type": "heartbeat"})
        assert bob.receive_json() == {"type": "pong", "data": {}}

        bob.send_text("garbage")
        error = bob.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "MalformedEnvelope"

        details = client.get("/conversations/c1").json()
        assert details["members"] == ["alice", "bob"]
        assert details["online_members"] == ["alice", "bob"]
        assert details["last_sequence"] == 1

        presence = client.get("/users/alice/presence").json()
        assert presence["online"] is True
        assert presence["conversations"] == ["c1"]

        health = client.get("/health").json()
        assert health["connections"] == 2
        assert health["authenticated_connections"] == 2


def test_rejected_credentials_get_an_error_frame(client, identity):
    identity.issue("alice", token="right")
    with client.websocket_connect("/ws") as ws:
        reply = _authenticate(ws, "alice", "wrong")
        assert reply["type"] == "error"
        assert reply["data"]["code"] == "Unauthenticated"


def test_build_hub_in_memory():
    hub = build_hub("memory")
    assert isinstance(hub, Hub)
    assert not hub.running


def test_binary_frame_is_rejected_without_closing(client, identity):
    token = identity.issue("alice")
    with client.websocket_connect("/ws") as ws:
        assert _authenticate(ws, "alice", token)["type"] == "authenticated"

        ws.send_bytes(b'{"type": "heartbeat", "data": {}}')
        error = ws.receive_json()
        assert error["type"] == "error"
        assert error["data"]["code"] == "MalformedEnvelope"

        ws.send_json({"type": "heartbeat"})
        assert ws.receive_json() == {"type": "pong", "data": {}}
