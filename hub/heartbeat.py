"""Heartbeat / Liveness Monitor.

Clients heartbeat every ``interval`` seconds. On its own fixed-interval task the
monitor closes every connection whose last heartbeat is older than twice the
interval. Eviction only enqueues close work, so a stalled consumer cannot hold
up the sweep.
"""
import asyncio
import time
from typing import Awaitable, Callable, List, Optional

from constants import HEARTBEAT_INTERVAL
from hub.errors import CloseReason
from hub.registry import ConnectionRegistry
from logging_config import get_logger

logger = get_logger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        registry: ConnectionRegistry,
        close_connection: Callable[[str, CloseReason], bool],
        interval: float = HEARTBEAT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("Heartbeat interval must be positive")
        self.interval = interval
        self._registry = registry
        self._close_connection = close_connection
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def max_silence(self) -> float:
        return 2 * self.interval

    def evict(self) -> List[str]:
        """Close stale connections. Must run on the coordinator."""
        stale = self._registry.stale(self._clock(), self.max_silence)
        for connection_id in stale:
            logger.info(f"Connection {connection_id} missed heartbeats for {self.max_silence}s, closing")
            self._close_connection(connection_id, CloseReason.TIMEOUT)
        return stale

    def start(self, post: Callable[[Callable], Awaitable]):
        """Run ``evict`` through ``post`` (the coordinator) every interval."""
        self._task = asyncio.create_task(self._run(post))

    async def _run(self, post: Callable[[Callable], Awaitable]):
        logger.info(f"Heartbeat monitor started (interval {self.interval}s)")
        while True:
            await asyncio.sleep(self.interval)
            try:
                await post(self.evict)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Heartbeat sweep failed: {e}", exc_info=True)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Heartbeat monitor stopped")
