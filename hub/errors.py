"""Error taxonomy and connection close reasons.

Errors raised while handling a frame are returned to the offending connection
as an ``error`` frame carrying ``code``. Close reasons end a connection and map
to a WebSocket close code.
"""
from enum import Enum
from typing import Optional


class HubError(Exception):
    code = "HubError"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, conversation_id: Optional[str] = None, message_id: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.conversation_id = conversation_id
        self.message_id = message_id


class Unauthenticated(HubError):
    code = "Unauthenticated"
    default_message = "Authenticate before using this connection"


class NotAMember(HubError):
    code = "NotAMember"
    default_message = "Not a member of this conversation"


class Forbidden(HubError):
    code = "Forbidden"
    default_message = "Not allowed to join this conversation"


class MalformedEnvelope(HubError):
    code = "MalformedEnvelope"
    default_message = "Malformed envelope"


class PersistenceFailure(HubError):
    code = "PersistenceFailure"
    default_message = "Message was delivered but could not be saved"


class CloseReason(str, Enum):
    CLIENT_DISCONNECT = "ClientDisconnect"
    TIMEOUT = "Timeout"
    SLOW_CONSUMER = "SlowConsumer"
    TRANSPORT_ERROR = "TransportError"
    INTERNAL_ERROR = "InternalError"
    SHUTDOWN = "Shutdown"

    @property
    def close_code(self) -> int:
        return _CLOSE_CODES[self]


_CLOSE_CODES = {
    CloseReason.CLIENT_DISCONNECT: 1000,
    CloseReason.SHUTDOWN: 1001,
    CloseReason.TRANSPORT_ERROR: 1011,
    CloseReason.INTERNAL_ERROR: 1011,
    CloseReason.TIMEOUT: 4001,
    CloseReason.SLOW_CONSUMER: 4008,
}
