"""Wire protocol: JSON envelopes ``{type, data}`` with camelCase fields.

Inbound frames are validated once, here, into one of the envelope models below.
Handlers never see raw dictionaries.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from constants import MAX_FRAME_SIZE, MAX_MESSAGE_LENGTH
from hub.errors import MalformedEnvelope

Identifier = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]
MessageBody = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_MESSAGE_LENGTH)]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# Client -> server

class AuthenticateData(WireModel):
    user_id: Identifier
    token: str


class ConversationRef(WireModel):
    conversation_id: Identifier


class SendMessageData(ConversationRef):
    body: MessageBody


class MarkReadData(ConversationRef):
    message_id: Identifier


class EmptyData(WireModel):
    pass


class AuthenticateEnvelope(WireModel):
    type: Literal["authenticate"]
    data: AuthenticateData


class JoinEnvelope(WireModel):
    type: Literal["join"]
    data: ConversationRef


class LeaveEnvelope(WireModel):
    type: Literal["leave"]
    data: ConversationRef


class SendMessageEnvelope(WireModel):
    type: Literal["send_message"]
    data: SendMessageData


class TypingStartEnvelope(WireModel):
    type: Literal["typing_start"]
    data: ConversationRef


class TypingStopEnvelope(WireModel):
    type: Literal["typing_stop"]
    data: ConversationRef


class MarkReadEnvelope(WireModel):
    type: Literal["mark_read"]
    data: MarkReadData


class HeartbeatEnvelope(WireModel):
    type: Literal["heartbeat"]
    data: EmptyData = Field(default_factory=EmptyData)


InboundEnvelope = Annotated[
    Union[
        AuthenticateEnvelope,
        JoinEnvelope,
        LeaveEnvelope,
        SendMessageEnvelope,
        TypingStartEnvelope,
        TypingStopEnvelope,
        MarkReadEnvelope,
        HeartbeatEnvelope,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEnvelope)


def parse_inbound(raw: str) -> InboundEnvelope:
    """Validate a raw client frame. Raises MalformedEnvelope on any problem."""
    if len(raw.encode("utf-8")) > MAX_FRAME_SIZE:
        raise MalformedEnvelope(f"Frame exceeds {MAX_FRAME_SIZE} bytes")
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = f"{location}: {first['msg']}" if location else first["msg"]
        raise MalformedEnvelope(detail) from e


# Server -> client

class ServerEvent(str, Enum):
    AUTHENTICATED = "authenticated"
    JOINED = "joined"
    LEFT = "left"
    NEW_MESSAGE = "new_message"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    PRESENCE_CHANGED = "presence_changed"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    MESSAGE_READ = "message_read"
    CONVERSATION_MESSAGES = "conversation_messages"
    ERROR = "error"
    PONG = "pong"


class Message(WireModel):
    id: str
    conversation_id: str
    sender_id: str
    body: str
    sequence: int
    sent_at: datetime


class AuthenticatedData(WireModel):
    online_users: list[str]


class NewMessageData(WireModel):
    message: Message


class UserConversationData(WireModel):
    user_id: str
    conversation_id: str


class PresenceData(WireModel):
    user_id: str
    online: bool


class ReadReceiptData(WireModel):
    user_id: str
    conversation_id: str
    message_id: str


class HistoryData(WireModel):
    conversation_id: str
    messages: list[Message]


class ErrorData(WireModel):
    code: str
    message: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


def encode(event: ServerEvent, data: Optional[WireModel] = None) -> str:
    """Serialize an outbound envelope once so fan-out can reuse the same frame."""
    payload = data.model_dump(mode="json", by_alias=True, exclude_none=True) if data is not None else {}
    return json.dumps({"type": event.value, "data": payload})
