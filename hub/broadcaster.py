"""Message Router / Broadcaster.

Resolves recipients through the membership index and the registry and fans
frames out to every live connection. Every method runs on the coordinator, so
the per-conversation sequence counter is assigned at a single serialization
point. Fan-out only enqueues onto bounded per-connection queues; a full queue
closes that connection as a slow consumer once the fan-out loop is done.
"""
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from hub.connection import Connection
from hub.errors import CloseReason, HubError, NotAMember, PersistenceFailure
from hub.membership import MembershipIndex
from hub.registry import ConnectionRegistry
from hub.typing_state import TypingState, TypingTracker
from logging_config import get_logger
from schemas.protocol import (
    ErrorData,
    Message,
    NewMessageData,
    PresenceData,
    ReadReceiptData,
    ServerEvent,
    UserConversationData,
    encode,
)

logger = get_logger(__name__)


class MessageRouter:
    def __init__(
        self,
        registry: ConnectionRegistry,
        membership: MembershipIndex,
        typing: TypingTracker,
        close_connection: Callable[[str, CloseReason], bool],
    ):
        self._registry = registry
        self._membership = membership
        self._typing = typing
        self._close_connection = close_connection
        self._sequences: Dict[str, int] = {}

    # delivery

    def _push(self, connections: Iterable[Connection], frame: str) -> int:
        delivered = 0
        overflowed: List[str] = []
        for connection in connections:
            if not connection.is_authenticated:
                continue
            if connection.enqueue(frame):
                delivered += 1
            else:
                overflowed.append(connection.id)
        for connection_id in overflowed:
            logger.warning(f"Outbound queue full on connection {connection_id}, dropping slow consumer")
            self._close_connection(connection_id, CloseReason.SLOW_CONSUMER)
        return delivered

    def deliver(self, user_ids: Iterable[str], frame: str, exclude_user: Optional[str] = None) -> int:
        """Enqueue ``frame`` on every live connection of every user. Returns the number of connections reached."""
        targets: List[Connection] = []
        for user_id in user_ids:
            if user_id == exclude_user:
                continue
            targets.extend(self._registry.live_connections_of(user_id))
        return self._push(targets, frame)

    def reply(self, connection_id: str, frame: str) -> bool:
        connection = self._registry.get(connection_id)
        if connection is None or not connection.is_open:
            return False
        if connection.enqueue(frame):
            return True
        logger.warning(f"Outbound queue full on connection {connection_id}, dropping slow consumer")
        self._close_connection(connection_id, CloseReason.SLOW_CONSUMER)
        return False

    def reply_error(self, connection_id: str, error: HubError) -> bool:
        data = ErrorData(
            code=error.code,
            message=error.message,
            conversation_id=error.conversation_id,
            message_id=error.message_id,
        )
        return self.reply(connection_id, encode(ServerEvent.ERROR, data))

    def _require_member(self, connection_id: str, conversation_id: str) -> Connection:
        connection = self._registry.require_authenticated(connection_id)
        if not self._membership.is_member(connection.user_id, conversation_id):
            raise NotAMember(f"Not a member of {conversation_id}", conversation_id=conversation_id)
        return connection

    # messages

    def send(self, connection_id: str, conversation_id: str, body: str) -> Message:
        connection = self._require_member(connection_id, conversation_id)
        sequence = self._sequences.get(conversation_id, 0) + 1
        self._sequences[conversation_id] = sequence
        message = Message(
            id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            sender_id=connection.user_id,
            body=body,
            sequence=sequence,
            sent_at=datetime.now(timezone.utc),
        )
        members = self._membership.members_of(conversation_id)
        delivered = self.deliver(members, encode(ServerEvent.NEW_MESSAGE, NewMessageData(message=message)))
        logger.debug(f"Message #{sequence} in {conversation_id} from {connection.user_id} reached {delivered} connections")

        if self._typing.stop(conversation_id, connection.user_id):
            self.announce_stopped(conversation_id, connection.user_id)
        return message

    def last_sequence(self, conversation_id: str) -> int:
        return self._sequences.get(conversation_id, 0)

    def has_sequence(self, conversation_id: str) -> bool:
        return conversation_id in self._sequences

    def seed_sequence(self, conversation_id: str, sequence: int):
        """Never moves a counter backwards; a send may have landed while the store was read."""
        self._sequences[conversation_id] = max(self._sequences.get(conversation_id, 0), sequence)

    def report_persistence_failure(self, connection_id: str, message: Message) -> bool:
        error = PersistenceFailure(conversation_id=message.conversation_id, message_id=message.id)
        return self.reply_error(connection_id, error)

    # typing

    def start_typing(self, connection_id: str, conversation_id: str) -> bool:
        connection = self._require_member(connection_id, conversation_id)
        if not self._typing.start(conversation_id, connection.user_id):
            return False
        frame = encode(ServerEvent.USER_TYPING, UserConversationData(user_id=connection.user_id, conversation_id=conversation_id))
        self.deliver(self._membership.members_of(conversation_id), frame, exclude_user=connection.user_id)
        return True

    def stop_typing(self, connection_id: str, conversation_id: str) -> bool:
        connection = self._require_member(connection_id, conversation_id)
        if not self._typing.stop(conversation_id, connection.user_id):
            return False
        self.announce_stopped(conversation_id, connection.user_id)
        return True

    def typing_cleared(self, state: TypingState):
        """Announce a typing state removed by expiry, leave or disconnect."""
        self.announce_stopped(state.conversation_id, state.user_id)

    def announce_stopped(self, conversation_id: str, user_id: str):
        frame = encode(ServerEvent.USER_STOPPED_TYPING, UserConversationData(user_id=user_id, conversation_id=conversation_id))
        self.deliver(self._membership.members_of(conversation_id), frame, exclude_user=user_id)

    # receipts and notices

    def mark_read(self, connection_id: str, conversation_id: str, message_id: str) -> int:
        connection = self._require_member(connection_id, conversation_id)
        frame = encode(
            ServerEvent.MESSAGE_READ,
            ReadReceiptData(user_id=connection.user_id, conversation_id=conversation_id, message_id=message_id),
        )
        return self.deliver(self._membership.members_of(conversation_id), frame, exclude_user=connection.user_id)

    def announce_membership(self, event: ServerEvent, user_id: str, conversation_id: str, audience: Iterable[str]) -> int:
        frame = encode(event, UserConversationData(user_id=user_id, conversation_id=conversation_id))
        return self.deliver(audience, frame, exclude_user=user_id)

    def broadcast_presence(self, user_id: str, online: bool) -> int:
        frame = encode(ServerEvent.PRESENCE_CHANGED, PresenceData(user_id=user_id, online=online))
        targets = [c for c in self._registry.authenticated_connections() if c.user_id != user_id]
        return self._push(targets, frame)
