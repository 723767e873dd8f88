"""Reconnecting hub client.

Connection lifecycle is an explicit state machine::

    Disconnected -> Connecting -> Authenticated -> Degraded -> Disconnected
                                       ^              |
                                       +--- pong -----+

``ClientStateMachine`` holds the rules and timers and does no I/O.
``HubClient`` drives it over a ``websockets`` connection.
"""
import asyncio
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from constants import HEARTBEAT_INTERVAL
from logging_config import get_logger

logger = get_logger(__name__)


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    DEGRADED = "degraded"


_TRANSITIONS = {
    ClientState.DISCONNECTED: {ClientState.CONNECTING},
    ClientState.CONNECTING: {ClientState.AUTHENTICATED, ClientState.DISCONNECTED},
    ClientState.AUTHENTICATED: {ClientState.DEGRADED, ClientState.DISCONNECTED},
    ClientState.DEGRADED: {ClientState.AUTHENTICATED, ClientState.DISCONNECTED},
}


class InvalidTransition(RuntimeError):
    pass


class ClientStateMachine:
    def __init__(
        self,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        pong_timeout: Optional[float] = None,
        degraded_timeout: Optional[float] = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.heartbeat_interval = heartbeat_interval
        self.pong_timeout = pong_timeout if pong_timeout is not None else heartbeat_interval
        # the hub evicts after two silent intervals, so give up no later than that
        self.degraded_timeout = degraded_timeout if degraded_timeout is not None else 2 * heartbeat_interval
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self.state = ClientState.DISCONNECTED
        self.failures = 0
        self._ping_sent_at: Optional[float] = None
        self._degraded_since: Optional[float] = None

    def _move(self, state: ClientState):
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {state.value}")
        logger.debug(f"Client state {self.state.value} -> {state.value}")
        self.state = state

    def connecting(self):
        self._move(ClientState.CONNECTING)

    def authenticated(self):
        self._move(ClientState.AUTHENTICATED)
        self.failures = 0
        self._ping_sent_at = None
        self._degraded_since = None

    def heartbeat_sent(self):
        if self.state in (ClientState.AUTHENTICATED, ClientState.DEGRADED) and self._ping_sent_at is None:
            self._ping_sent_at = self._clock()

    def pong_received(self):
        self._ping_sent_at = None
        if self.state == ClientState.DEGRADED:
            self._degraded_since = None
            self._move(ClientState.AUTHENTICATED)

    def tick(self) -> ClientState:
        """Apply timers: a late pong degrades the connection, a long degradation drops it."""
        now = self._clock()
        if self.state == ClientState.AUTHENTICATED and self._ping_sent_at is not None:
            if now - self._ping_sent_at >= self.pong_timeout:
                self._move(ClientState.DEGRADED)
                self._degraded_since = now
        elif self.state == ClientState.DEGRADED and now - self._degraded_since >= self.degraded_timeout:
            self.disconnected()
        return self.state

    def disconnected(self):
        if self.state == ClientState.DISCONNECTED:
            return
        self._move(ClientState.DISCONNECTED)
        self.failures += 1
        self._ping_sent_at = None
        self._degraded_since = None

    def next_delay(self) -> float:
        """Seconds to wait before the next connection attempt (capped exponential backoff)."""
        if self.failures == 0:
            return 0.0
        return min(self.max_delay, self.base_delay * 2 ** (self.failures - 1))


EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class HubClient:
    def __init__(
        self,
        url: str,
        user_id: str,
        token: str,
        on_event: Optional[EventHandler] = None,
        state_machine: Optional[ClientStateMachine] = None,
    ):
        self.url = url
        self.user_id = user_id
        self.token = token
        self.on_event = on_event
        self.machine = state_machine or ClientStateMachine()
        self._ws = None
        self._stopped = False

    @property
    def state(self) -> ClientState:
        return self.machine.state

    async def run(self):
        """Connect, authenticate and keep reconnecting until ``stop`` is called."""
        while not self._stopped:
            delay = self.machine.next_delay()
            if delay:
                logger.info(f"Reconnecting to {self.url} in {delay:.1f}s")
                await asyncio.sleep(delay)
            self.machine.connecting()
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    await self._session(ws)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Connection to {self.url} lost: {e}")
            finally:
                self._ws = None
                self.machine.disconnected()

    async def stop(self):
        self._stopped = True
        if self._ws is not None:
            await self._ws.close()

    async def _session(self, ws):
        await self._send_envelope("authenticate", {"userId": self.user_id, "token": self.token})
        heartbeat_task = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                try:
                    envelope = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON frame from hub")
                    continue
                await self._handle(envelope)
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _handle(self, envelope: Dict[str, Any]):
        msg_type = envelope.get("type")
        if msg_type == "authenticated":
            self.machine.authenticated()
        elif msg_type == "pong":
            self.machine.pong_received()
        elif msg_type == "error" and self.machine.state == ClientState.CONNECTING:
            data = envelope.get("data") or {}
            if data.get("code") == "Unauthenticated":
                logger.error(f"Hub rejected credentials for {self.user_id}, giving up")
                # the hub keeps the socket open after a failed authenticate
                await self.stop()
        if self.on_event is not None:
            await self.on_event(envelope)

    async def _heartbeat(self, ws):
        while True:
            await asyncio.sleep(self.machine.heartbeat_interval)
            self.machine.heartbeat_sent()
            await self._send_envelope("heartbeat", {})
            if self.machine.tick() == ClientState.DISCONNECTED:
                logger.warning("No pong from hub, dropping connection")
                await ws.close()
                return

    async def _send_envelope(self, msg_type: str, data: Dict[str, Any]):
        if self._ws is None:
            raise RuntimeError("Client is not connected")
        await self._ws.send(json.dumps({"type": msg_type, "data": data}))

    async def join(self, conversation_id: str):
        await self._send_envelope("join", {"conversationId": conversation_id})

    async def leave(self, conversation_id: str):
        await self._send_envelope("leave", {"conversationId": conversation_id})

    async def send_message(self, conversation_id: str, body: str):
        await self._send_envelope("send_message", {"conversationId": conversation_id, "body": body})

    async def typing(self, conversation_id: str, active: bool = True):
        await self._send_envelope("typing_start" if active else "typing_stop", {"conversationId": conversation_id})
