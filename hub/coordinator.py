"""The hub coordinator.

One actor task owns the registry, membership index, presence tracker, typing
tracker and sequence counters. Connection handlers never touch that state
directly: they post a synchronous function to the command queue and await its
result. Work that has to wait on the outside world (identity checks,
authorization, persistence, closing transports) happens outside the actor and
re-enters it with a fresh command, so a slow collaborator never stalls
unrelated connections or conversations.
"""
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Set

from constants import (
    HEARTBEAT_INTERVAL,
    HISTORY_LIMIT,
    MAINTENANCE_INTERVAL,
    OUTBOUND_QUEUE_LIMIT,
    PRESENCE_DEBOUNCE,
    TYPING_TIMEOUT,
)
from hub.broadcaster import MessageRouter
from hub.collaborators import Authorizer, IdentityService, MessageStore
from hub.errors import CloseReason, Forbidden, HubError, Unauthenticated
from hub.heartbeat import HeartbeatMonitor
from hub.membership import MembershipIndex
from hub.presence import PresenceTracker
from hub.registry import ConnectionRegistry
from hub.typing_state import TypingTracker
from logging_config import get_logger
from schemas.protocol import (
    AuthenticatedData,
    ConversationRef,
    HistoryData,
    Message,
    ServerEvent,
    encode,
    parse_inbound,
)

logger = get_logger(__name__)


class Hub:
    def __init__(
        self,
        identity: IdentityService,
        authorizer: Authorizer,
        store: MessageStore,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        typing_timeout: float = TYPING_TIMEOUT,
        presence_debounce: float = PRESENCE_DEBOUNCE,
        outbound_queue_limit: int = OUTBOUND_QUEUE_LIMIT,
        maintenance_interval: float = MAINTENANCE_INTERVAL,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._identity = identity
        self._authorizer = authorizer
        self._store = store
        self.maintenance_interval = maintenance_interval
        self.history_limit = history_limit

        self.registry = ConnectionRegistry(outbound_queue_limit, clock, on_writer_failure=self._writer_failed)
        self.membership = MembershipIndex()
        self.typing = TypingTracker(typing_timeout, clock)
        self.router = MessageRouter(self.registry, self.membership, self.typing, self._close_connection)
        self.presence = PresenceTracker(presence_debounce, clock, on_change=self.router.broadcast_presence)
        self.registry.add_listener(self.presence.on_transition)
        self.heartbeat = HeartbeatMonitor(self.registry, self._close_connection, heartbeat_interval, clock)

        self._commands: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._maintenance: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # lifecycle

    @property
    def running(self) -> bool:
        return self._commands is not None

    async def start(self):
        if self.running:
            return
        self._commands = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())
        self.heartbeat.start(self._call)
        self._maintenance = asyncio.create_task(self._maintain_forever())
        logger.info("Hub started")

    async def stop(self):
        if not self.running:
            return
        logger.info(f"Hub stopping, closing {len(self.registry)} connections")
        await self._call(self._close_all, CloseReason.SHUTDOWN)
        await self.heartbeat.stop()
        self._maintenance.cancel()
        if self._background:
            await asyncio.wait(list(self._background), timeout=5)
        for task in [self._maintenance, self._worker, *self._background]:
            task.cancel()
        await asyncio.gather(self._maintenance, self._worker, *self._background, return_exceptions=True)
        self._commands = None
        self._worker = None
        self._maintenance = None
        logger.info("Hub stopped")

    async def _run(self):
        while True:
            fn, args, future = await self._commands.get()
            if future.done():
                continue
            try:
                result = fn(*args)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

    async def _call(self, fn: Callable, *args) -> Any:
        """Run ``fn(*args)`` on the coordinator and wait for its result."""
        if self._commands is None:
            raise RuntimeError("Hub is not running")
        future = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((fn, args, future))
        return await future

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _maintain_forever(self):
        while True:
            await asyncio.sleep(self.maintenance_interval)
            try:
                await self._call(self._maintain)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Hub maintenance failed: {e}", exc_info=True)

    def _maintain(self):
        for state in self.typing.sweep():
            logger.debug(f"Typing indicator of {state.user_id} in {state.conversation_id} expired")
            self.router.typing_cleared(state)
        self.presence.sweep()

    async def run_maintenance(self):
        """Expire typing indicators and settle debounced presence now."""
        await self._call(self._maintain)

    async def evict_stale(self) -> List[str]:
        """Run one heartbeat sweep now."""
        return await self._call(self.heartbeat.evict)

    # connections

    async def register(self, transport: Any) -> str:
        return await self._call(self.registry.register, transport)

    async def close(self, connection_id: str, reason: CloseReason = CloseReason.CLIENT_DISCONNECT) -> bool:
        if not self.running:
            return False
        return await self._call(self._close_connection, connection_id, reason)

    def _close_connection(self, connection_id: str, reason: CloseReason) -> bool:
        connection = self.registry.close(connection_id, reason)
        if connection is None:
            return False
        if connection.user_id and not self.registry.connections_of(connection.user_id):
            for state in self.typing.clear_user(connection.user_id):
                self.router.typing_cleared(state)
        self._spawn(connection.shutdown())
        return True

    def _close_all(self, reason: CloseReason):
        for connection_id in self.registry.all_ids():
            self._close_connection(connection_id, reason)

    def _writer_failed(self, connection_id: str):
        if self.running:
            self._spawn(self.close(connection_id, CloseReason.TRANSPORT_ERROR))

    # inbound frames

    async def handle_frame(self, connection_id: str, raw: str):
        """Validate and dispatch one client frame. Errors go back to this connection only."""
        try:
            envelope = parse_inbound(raw)
            await self._dispatch(connection_id, envelope)
        except HubError as e:
            await self.reject_frame(connection_id, e)
        except Exception as e:
            logger.error(f"Unexpected error on connection {connection_id}, closing it: {e}", exc_info=True)
            await self.close(connection_id, CloseReason.INTERNAL_ERROR)

    async def reject_frame(self, connection_id: str, error: HubError):
        """Answer a frame that could not be handled with an ``error`` frame; the connection stays open."""
        logger.debug(f"Connection {connection_id}: {error.code}: {error.message}")
        await self._call(self.router.reply_error, connection_id, error)

    async def _dispatch(self, connection_id: str, envelope):
        msg_type = envelope.type
        data = envelope.data
        if msg_type == "heartbeat":
            await self.heartbeat_received(connection_id)
        elif msg_type == "authenticate":
            await self.authenticate(connection_id, data.user_id, data.token)
        elif msg_type == "join":
            await self.join(connection_id, data.conversation_id)
        elif msg_type == "leave":
            await self.leave(connection_id, data.conversation_id)
        elif msg_type == "send_message":
            await self.send(connection_id, data.conversation_id, data.body)
        elif msg_type == "typing_start":
            await self.start_typing(connection_id, data.conversation_id)
        elif msg_type == "typing_stop":
            await self.stop_typing(connection_id, data.conversation_id)
        elif msg_type == "mark_read":
            await self.mark_read(connection_id, data.conversation_id, data.message_id)

    # operations

    async def heartbeat_received(self, connection_id: str):
        await self._call(self._heartbeat, connection_id)

    def _heartbeat(self, connection_id: str):
        self.registry.heartbeat(connection_id)
        self.router.reply(connection_id, encode(ServerEvent.PONG))

    async def authenticate(self, connection_id: str, user_id: str, token: str) -> List[str]:
        await self._call(self._require_unbound, connection_id)
        try:
            verified = await self._identity.verify(user_id, token)
        except Exception as e:
            logger.warning(f"Identity check for {user_id} failed: {e}")
            verified = False
        if not verified:
            logger.info(f"Authentication rejected for {user_id} on connection {connection_id}")
            raise Unauthenticated("Invalid credentials")
        return await self._call(self._bind, connection_id, user_id)

    def _require_unbound(self, connection_id: str):
        connection = self.registry.require_open(connection_id)
        if connection.user_id is not None:
            raise Unauthenticated(f"Connection is already authenticated as {connection.user_id}")

    def _bind(self, connection_id: str, user_id: str) -> List[str]:
        self.registry.authenticate(connection_id, user_id)
        online_users = self.presence.online_users()
        self.router.reply(connection_id, encode(ServerEvent.AUTHENTICATED, AuthenticatedData(online_users=online_users)))
        return online_users

    async def join(self, connection_id: str, conversation_id: str) -> bool:
        user_id = await self._call(self._authenticated_user, connection_id)
        try:
            allowed = await self._authorizer.can_join(user_id, conversation_id)
        except Exception as e:
            logger.warning(f"Authorization check for {user_id} in {conversation_id} failed: {e}")
            allowed = False
        if not allowed:
            logger.info(f"Join of {conversation_id} denied for {user_id}")
            raise Forbidden(f"Not allowed to join {conversation_id}", conversation_id=conversation_id)
        added = await self._call(self._apply_join, connection_id, user_id, conversation_id)
        if self.history_limit > 0:
            self._spawn(self._send_history(connection_id, conversation_id))
        return added

    def _authenticated_user(self, connection_id: str) -> str:
        return self.registry.require_authenticated(connection_id).user_id

    def _apply_join(self, connection_id: str, user_id: str, conversation_id: str) -> bool:
        # the connection may have closed while authorization was pending
        self.registry.require_authenticated(connection_id)
        added = self.membership.join(user_id, conversation_id)
        self.router.reply(connection_id, encode(ServerEvent.JOINED, ConversationRef(conversation_id=conversation_id)))
        if added:
            logger.info(f"{user_id} joined {conversation_id}")
            self.router.announce_membership(
                ServerEvent.USER_JOINED, user_id, conversation_id, self.membership.members_of(conversation_id)
            )
        return added

    async def _send_history(self, connection_id: str, conversation_id: str):
        try:
            messages = await self._store.recent(conversation_id, self.history_limit)
        except Exception as e:
            logger.warning(f"Could not load history for {conversation_id}: {e}")
            return
        frame = encode(ServerEvent.CONVERSATION_MESSAGES, HistoryData(conversation_id=conversation_id, messages=messages))
        if self.running:
            await self._call(self.router.reply, connection_id, frame)

    async def leave(self, connection_id: str, conversation_id: str) -> bool:
        return await self._call(self._apply_leave, connection_id, conversation_id)

    def _apply_leave(self, connection_id: str, conversation_id: str) -> bool:
        user_id = self.registry.require_authenticated(connection_id).user_id
        removed = self.membership.leave(user_id, conversation_id)
        was_typing = self.typing.stop(conversation_id, user_id)
        self.router.reply(connection_id, encode(ServerEvent.LEFT, ConversationRef(conversation_id=conversation_id)))
        if removed:
            logger.info(f"{user_id} left {conversation_id}")
            if was_typing:
                self.router.announce_stopped(conversation_id, user_id)
            self.router.announce_membership(
                ServerEvent.USER_LEFT, user_id, conversation_id, self.membership.members_of(conversation_id)
            )
        return removed

    async def send(self, connection_id: str, conversation_id: str, body: str) -> Message:
        if not await self._call(self.router.has_sequence, conversation_id):
            await self._seed_sequence(conversation_id)
        message = await self._call(self.router.send, connection_id, conversation_id, body)
        self._spawn(self._persist(connection_id, message))
        return message

    async def _seed_sequence(self, conversation_id: str):
        """Continue numbering after the latest stored message, so sequences keep increasing across restarts."""
        try:
            latest = await self._store.recent(conversation_id, 1)
        except Exception as e:
            logger.warning(f"Could not read the latest sequence of {conversation_id}, numbering from memory: {e}")
            return
        if latest:
            await self._call(self.router.seed_sequence, conversation_id, latest[-1].sequence)

    async def _persist(self, connection_id: str, message: Message):
        try:
            stored = await self._store.persist(message)
        except Exception as e:
            logger.warning(f"Message store raised for message {message.id} in {message.conversation_id}: {e}")
            stored = False
        if stored:
            return
        logger.warning(f"Message {message.id} (#{message.sequence} in {message.conversation_id}) was not persisted")
        if self.running:
            await self._call(self.router.report_persistence_failure, connection_id, message)

    async def start_typing(self, connection_id: str, conversation_id: str) -> bool:
        return await self._call(self.router.start_typing, connection_id, conversation_id)

    async def stop_typing(self, connection_id: str, conversation_id: str) -> bool:
        return await self._call(self.router.stop_typing, connection_id, conversation_id)

    async def mark_read(self, connection_id: str, conversation_id: str, message_id: str) -> int:
        return await self._call(self.router.mark_read, connection_id, conversation_id, message_id)

    # read-only views for the HTTP API

    async def conversation_snapshot(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return await self._call(self._conversation_snapshot, conversation_id)

    def _conversation_snapshot(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        members = self.membership.members_of(conversation_id)
        last_sequence = self.router.last_sequence(conversation_id)
        if not members and not last_sequence:
            return None
        return {
            "conversation_id": conversation_id,
            "members": sorted(members),
            "online_members": sorted(m for m in members if self.presence.is_online(m)),
            "last_sequence": last_sequence,
            "typing_users": sorted(self.typing.typing_in(conversation_id)),
        }

    async def presence_snapshot(self, user_id: str) -> Dict[str, Any]:
        return await self._call(self._presence_snapshot, user_id)

    def _presence_snapshot(self, user_id: str) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "online": self.presence.is_online(user_id),
            "connections": self.presence.connection_count(user_id),
            "conversations": sorted(self.membership.conversations_of(user_id)),
        }

    async def stats(self) -> Dict[str, int]:
        return await self._call(self._stats)

    def _stats(self) -> Dict[str, int]:
        return {
            "connections": len(self.registry),
            "authenticated_connections": len(self.registry.authenticated_connections()),
            "online_users": len(self.presence.online_users()),
            "conversations": self.membership.conversation_count(),
        }
