"""Connection Registry: live connections and their authentication state.

Only the coordinator task calls into the registry, which serializes every
mutation of a connection (authenticate, heartbeat, close, eviction).
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from constants import OUTBOUND_QUEUE_LIMIT
from hub.connection import Connection, ConnectionState
from hub.errors import CloseReason, Unauthenticated
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegistryEvent:
    """A bound connection appeared or went away; ``live_count`` is the user's total after it."""
    kind: str  # "authenticated" | "closed"
    connection_id: str
    user_id: str
    live_count: int


class ConnectionRegistry:
    def __init__(
        self,
        queue_limit: int = OUTBOUND_QUEUE_LIMIT,
        clock: Callable[[], float] = time.monotonic,
        on_writer_failure: Optional[Callable[[str], None]] = None,
    ):
        self.queue_limit = queue_limit
        self._clock = clock
        self._on_writer_failure = on_writer_failure or (lambda connection_id: None)
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._listeners: List[Callable[[RegistryEvent], None]] = []

    def add_listener(self, listener: Callable[[RegistryEvent], None]):
        self._listeners.append(listener)

    def _notify(self, event: RegistryEvent):
        for listener in self._listeners:
            listener(event)

    def register(self, transport: Any) -> str:
        connection_id = uuid.uuid4().hex
        connection = Connection(
            id=connection_id,
            transport=transport,
            outbound=asyncio.Queue(maxsize=self.queue_limit),
            last_seen=self._clock(),
        )
        self._connections[connection_id] = connection
        connection.start_writer(self._on_writer_failure)
        logger.debug(f"Registered connection {connection_id} (total: {len(self._connections)})")
        return connection_id

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def require_open(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_open:
            raise Unauthenticated("Connection is not open")
        return connection

    def require_authenticated(self, connection_id: str) -> Connection:
        connection = self.require_open(connection_id)
        if not connection.is_authenticated:
            raise Unauthenticated()
        return connection

    def authenticate(self, connection_id: str, user_id: str) -> Connection:
        connection = self.require_open(connection_id)
        if connection.state != ConnectionState.CONNECTING:
            raise Unauthenticated(f"Connection is already authenticated as {connection.user_id}")
        if not user_id:
            raise Unauthenticated("Invalid identity")
        connection.user_id = user_id
        connection.advance(ConnectionState.AUTHENTICATED)
        connection.last_seen = self._clock()
        sessions = self._by_user.setdefault(user_id, set())
        sessions.add(connection_id)
        logger.info(f"Connection {connection_id} authenticated as {user_id} ({len(sessions)} live)")
        self._notify(RegistryEvent("authenticated", connection_id, user_id, len(sessions)))
        return connection

    def heartbeat(self, connection_id: str) -> Connection:
        """Refresh liveness. An unbound connection keeps its registration time, so it must authenticate within the eviction window."""
        connection = self.require_open(connection_id)
        if connection.is_authenticated:
            connection.last_seen = self._clock()
        return connection

    def close(self, connection_id: str, reason: CloseReason) -> Optional[Connection]:
        """Remove a connection. Returns it the first time, None on repeated calls."""
        connection = self._connections.pop(connection_id, None)
        if connection is None or not connection.is_open:
            return None
        connection.close_reason = reason
        connection.advance(ConnectionState.CLOSING)

        user_id = connection.user_id
        if user_id is None:
            logger.debug(f"Unauthenticated connection {connection_id} closed: {reason.value}")
            return connection

        sessions = self._by_user.get(user_id, set())
        sessions.discard(connection_id)
        if not sessions:
            self._by_user.pop(user_id, None)
        logger.info(f"Connection {connection_id} of {user_id} closed: {reason.value} ({len(sessions)} live)")
        self._notify(RegistryEvent("closed", connection_id, user_id, len(sessions)))
        return connection

    def connections_of(self, user_id: str) -> Set[str]:
        return set(self._by_user.get(user_id, ()))

    def live_connections_of(self, user_id: str) -> List[Connection]:
        return [self._connections[cid] for cid in self._by_user.get(user_id, ()) if cid in self._connections]

    def authenticated_connections(self) -> List[Connection]:
        return [c for c in self._connections.values() if c.is_authenticated]

    def online_users(self) -> List[str]:
        return sorted(self._by_user)

    def stale(self, now: float, max_age: float) -> List[str]:
        return [cid for cid, c in self._connections.items() if now - c.last_seen > max_age]

    def all_ids(self) -> List[str]:
        return list(self._connections)

    def __len__(self):
        return len(self._connections)
