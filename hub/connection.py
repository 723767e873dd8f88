"""A single live transport session and its outbound writer."""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from hub.errors import CloseReason
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSING = "closing"
    CLOSED = "closed"


_ORDER = [ConnectionState.CONNECTING, ConnectionState.AUTHENTICATED, ConnectionState.CLOSING, ConnectionState.CLOSED]


@dataclass(eq=False)
class Connection:
    """
    One client transport. ``transport`` needs ``send_text(str)`` and
    ``close(code=, reason=)`` coroutines, which a FastAPI WebSocket provides.

    Frames go through a bounded queue drained by a dedicated writer task, so
    sends on one connection keep submission order and never block the hub.
    """

    id: str
    transport: Any
    outbound: asyncio.Queue
    last_seen: float
    state: ConnectionState = ConnectionState.CONNECTING
    user_id: Optional[str] = None
    close_reason: Optional[CloseReason] = None
    writer: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    def advance(self, state: ConnectionState):
        if _ORDER.index(state) <= _ORDER.index(self.state):
            raise RuntimeError(f"Connection {self.id} cannot move from {self.state.value} to {state.value}")
        self.state = state

    def enqueue(self, frame: str) -> bool:
        """Queue a frame without waiting. False means the queue is full."""
        try:
            self.outbound.put_nowait(frame)
            return True
        except asyncio.QueueFull:
            return False

    def start_writer(self, on_failure: Callable[[str], None]):
        self.writer = asyncio.create_task(self._write_loop(on_failure))

    async def _write_loop(self, on_failure: Callable[[str], None]):
        while True:
            frame = await self.outbound.get()
            try:
                await self.transport.send_text(frame)
            except Exception as e:
                logger.warning(f"Send failed on connection {self.id}: {e}")
                on_failure(self.id)
                return

    async def shutdown(self):
        """Stop the writer, close the transport and mark the connection closed."""
        if self.writer is not None and self.writer is not asyncio.current_task():
            self.writer.cancel()
            try:
                await self.writer
            except asyncio.CancelledError:
                pass
        reason = self.close_reason or CloseReason.CLIENT_DISCONNECT
        try:
            await self.transport.close(code=reason.close_code, reason=reason.value)
        except Exception as e:
            logger.debug(f"Error closing transport for connection {self.id}: {e}")
        self.advance(ConnectionState.CLOSED)
        logger.debug(f"Connection {self.id} closed ({reason.value})")
