"""Wire protocol validation and encoding."""
import json
from datetime import datetime, timezone

import pytest

from hub.errors import MalformedEnvelope
from schemas.protocol import (
    AuthenticateEnvelope,
    ErrorData,
    HeartbeatEnvelope,
    Message,
    NewMessageData,
    SendMessageEnvelope,
    ServerEvent,
    encode,
    parse_inbound,
)


def test_parse_authenticate_uses_camel_case_fields():
    envelope = parse_inbound('{"type": "authenticate", "data": {"userId": "alice", "token": "t1"}}')
    assert isinstance(envelope, AuthenticateEnvelope)
    assert envelope.data.user_id == "alice"
    assert envelope.data.token == "t1"


def test_parse_send_message_strips_body():
    envelope = parse_inbound('{"type": "send_message", "data": {"conversationId": "c1", "body": "  hi  "}}')
    assert isinstance(envelope, SendMessageEnvelope)
    assert envelope.data.conversation_id == "c1"
    assert envelope.data.body == "hi"


def test_heartbeat_data_is_optional():
    assert isinstance(parse_inbound('{"type": "heartbeat"}'), HeartbeatEnvelope)
    assert isinstance(parse_inbound('{"type": "heartbeat", "data": {}}'), HeartbeatEnvelope)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"data": {}}',
        '{"type": "explode", "data": {}}',
        '{"type": "join", "data": {}}',
        '{"type": "send_message", "data": {"conversationId": "c1", "body": "   "}}',
        '{"type": "authenticate", "data": {"userId": "", "token": "x"}}',
    ],
)
def test_malformed_frames_are_rejected(raw):
    with pytest.raises(MalformedEnvelope):
        parse_inbound(raw)


def test_oversized_frame_is_rejected():
    raw = json.dumps({"type": "send_message", "data": {"conversationId": "c1", "body": "x" * 70000}})
    with pytest.raises(MalformedEnvelope):
        parse_inbound(raw)


def test_encode_new_message_uses_wire_names():
    message = Message(
        id="m1",
        conversation_id="c1",
        sender_id="alice",
        body="hello",
        sequence=1,
        sent_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    frame = json.loads(encode(ServerEvent.NEW_MESSAGE, NewMessageData(message=message)))
    assert frame["type"] == "new_message"
    assert frame["data"]["message"]["conversationId"] == "c1"
    assert frame["data"]["message"]["senderId"] == "alice"
    assert frame["data"]["message"]["sequence"] == 1
    assert frame["data"]["message"]["sentAt"].startswith("2025-01-01T00:00:00")


def test_encode_error_omits_empty_fields_and_pong_has_empty_data():
    error = json.loads(encode(ServerEvent.ERROR, ErrorData(code="Forbidden", message="nope")))
    assert error == {"type": "error", "data": {"code": "Forbidden", "message": "nope"}}
    assert json.loads(encode(ServerEvent.PONG)) == {"type": "pong", "data": {}}
