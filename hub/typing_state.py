"""Ephemeral typing indicators that expire unless renewed."""
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Set, Tuple

from constants import TYPING_TIMEOUT


@dataclass(frozen=True)
class TypingState:
    conversation_id: str
    user_id: str
    expires_at: float


class TypingTracker:
    def __init__(self, timeout: float = TYPING_TIMEOUT, clock: Callable[[], float] = time.monotonic):
        if timeout <= 0:
            raise ValueError("Typing timeout must be positive")
        self.timeout = timeout
        self._clock = clock
        self._states: Dict[Tuple[str, str], TypingState] = {}

    def start(self, conversation_id: str, user_id: str) -> bool:
        """Start or renew. Returns True only when the user was not already typing."""
        key = (conversation_id, user_id)
        is_new = key not in self._states
        self._states[key] = TypingState(conversation_id, user_id, self._clock() + self.timeout)
        return is_new

    def stop(self, conversation_id: str, user_id: str) -> bool:
        return self._states.pop((conversation_id, user_id), None) is not None

    def sweep(self) -> List[TypingState]:
        now = self._clock()
        expired = [state for state in self._states.values() if state.expires_at <= now]
        for state in expired:
            del self._states[(state.conversation_id, state.user_id)]
        return expired

    def clear_user(self, user_id: str) -> List[TypingState]:
        cleared = [state for state in self._states.values() if state.user_id == user_id]
        for state in cleared:
            del self._states[(state.conversation_id, state.user_id)]
        return cleared

    def typing_in(self, conversation_id: str) -> Set[str]:
        return {user_id for (cid, user_id) in self._states if cid == conversation_id}

    def __len__(self):
        return len(self._states)
