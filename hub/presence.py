"""Presence Tracker.

Online means "has at least one authenticated connection". The count is fed only
by registry transitions; nothing else sets presence. A flip is published after
it has held for the debounce window, so reconnect flapping produces no events.
"""
import time
from typing import Callable, Dict, List, Optional, Tuple

from constants import PRESENCE_DEBOUNCE
from hub.registry import RegistryEvent
from logging_config import get_logger

logger = get_logger(__name__)


class PresenceTracker:
    def __init__(
        self,
        debounce: float = PRESENCE_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[str, bool], None]] = None,
    ):
        self.debounce = debounce
        self._clock = clock
        self.on_change = on_change
        self._counts: Dict[str, int] = {}
        self._published: Dict[str, bool] = {}  # only users last published as online
        self._pending: Dict[str, Tuple[bool, float]] = {}  # user_id -> (online, since)

    def on_transition(self, event: RegistryEvent):
        if event.live_count > 0:
            self._counts[event.user_id] = event.live_count
        else:
            self._counts.pop(event.user_id, None)
        self._recompute(event.user_id)

    def _recompute(self, user_id: str):
        online = self.is_online(user_id)
        if online == self._published.get(user_id, False):
            # flipped back inside the window, nothing to announce
            self._pending.pop(user_id, None)
            return
        if self.debounce <= 0:
            self._publish(user_id, online)
            return
        pending = self._pending.get(user_id)
        if pending is None or pending[0] != online:
            self._pending[user_id] = (online, self._clock())

    def sweep(self) -> List[str]:
        """Publish every pending flip that has held for the debounce window."""
        now = self._clock()
        settled = [user_id for user_id, (_, since) in self._pending.items() if now - since >= self.debounce]
        published = []
        for user_id in settled:
            # publishing can drop slow consumers, which re-enters on_transition
            pending = self._pending.get(user_id)
            if pending is None or now - pending[1] < self.debounce:
                continue
            del self._pending[user_id]
            self._publish(user_id, pending[0])
            published.append(user_id)
        return published

    def _publish(self, user_id: str, online: bool):
        self._pending.pop(user_id, None)
        if online:
            self._published[user_id] = True
        else:
            self._published.pop(user_id, None)
        logger.info(f"Presence of {user_id} changed: {'online' if online else 'offline'}")
        if self.on_change is not None:
            self.on_change(user_id, online)

    def is_online(self, user_id: str) -> bool:
        return self._counts.get(user_id, 0) > 0

    def connection_count(self, user_id: str) -> int:
        return self._counts.get(user_id, 0)

    def online_users(self) -> List[str]:
        return sorted(self._counts)
