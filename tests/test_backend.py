"""Redis-backed collaborators against a mocked client."""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import redis

from backend import RedisAuthorizer, RedisBackend, RedisIdentityService, RedisMessageStore
from schemas.protocol import Message


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def backend(client):
    return RedisBackend(redis_client=client, retention=3)


def _message(sequence=1):
    return Message(
        id=f"m{sequence}",
        conversation_id="c1",
        sender_id="alice",
        body="hello",
        sequence=sequence,
        sent_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


def test_ping_reports_connection_errors(backend, client):
    assert backend.ping() is True
    client.ping.side_effect = redis.ConnectionError("refused")
    assert backend.ping() is False


def test_session_keys(backend, client):
    backend.create_session("tok", "alice", ttl=60)
    client.set.assert_called_once_with("session:tok", "alice", ex=60)
    backend.delete_session("tok")
    client.delete.assert_called_once_with("session:tok")


def test_append_message_trims_to_retention(backend, client):
    pipe = client.pipeline.return_value
    backend.append_message("c1", "{}")
    pipe.rpush.assert_called_once_with("conversation:messages:c1", "{}")
    pipe.ltrim.assert_called_once_with("conversation:messages:c1", -3, -1)
    pipe.execute.assert_called_once()


def test_get_messages_with_no_limit_skips_redis(backend, client):
    assert backend.get_messages("c1", 0) == []
    client.lrange.assert_not_called()


async def test_identity_checks_session_owner(backend, client):
    identity = RedisIdentityService(backend)
    client.get.return_value = "alice"
    assert await identity.verify("alice", "tok") is True
    assert await identity.verify("bob", "tok") is False
    client.get.return_value = None
    assert await identity.verify("alice", "expired") is False
    assert await identity.verify("alice", "") is False


async def test_authorizer_reads_acl_set(backend, client):
    authorizer = RedisAuthorizer(backend)
    client.sismember.return_value = 1
    assert await authorizer.can_join("alice", "c1") is True
    client.sismember.assert_called_with("conversation:acl:c1", "alice")
    client.sismember.return_value = 0
    assert await authorizer.can_join("alice", "c1") is False


async def test_store_persists_camel_case_json(backend, client):
    store = RedisMessageStore(backend)
    pipe = client.pipeline.return_value
    assert await store.persist(_message()) is True
    stored = json.loads(pipe.rpush.call_args[0][1])
    assert stored["conversationId"] == "c1"
    assert stored["sequence"] == 1


async def test_store_reports_redis_failures(backend, client):
    store = RedisMessageStore(backend)
    client.pipeline.return_value.execute.side_effect = redis.ConnectionError("gone")
    assert await store.persist(_message()) is False


async def test_recent_skips_unreadable_entries(backend, client):
    store = RedisMessageStore(backend)
    client.lrange.return_value = [
        _message(1).model_dump_json(by_alias=True),
        "not json",
        json.dumps({"id": "broken"}),
        _message(2).model_dump_json(by_alias=True),
    ]
    messages = await store.recent("c1", 10)
    assert [m.sequence for m in messages] == [1, 2]
    client.lrange.assert_called_once_with("conversation:messages:c1", -10, -1)
