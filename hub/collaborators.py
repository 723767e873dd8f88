"""External collaborators the hub consumes, and in-memory implementations.

The Redis-backed implementations used in production live in ``backend.py``.
"""
import secrets
from typing import Dict, List, Optional, Protocol, Set

from schemas.protocol import Message


class IdentityService(Protocol):
    async def verify(self, user_id: str, token: str) -> bool: ...


class Authorizer(Protocol):
    async def can_join(self, user_id: str, conversation_id: str) -> bool: ...


class MessageStore(Protocol):
    async def persist(self, message: Message) -> bool: ...

    async def recent(self, conversation_id: str, limit: int) -> List[Message]: ...


class InMemoryIdentityService:
    def __init__(self):
        self._sessions: Dict[str, str] = {}  # token -> user_id

    def issue(self, user_id: str, token: Optional[str] = None) -> str:
        token = token or secrets.token_urlsafe(24)
        self._sessions[token] = user_id
        return token

    def revoke(self, token: str):
        self._sessions.pop(token, None)

    async def verify(self, user_id: str, token: str) -> bool:
        return bool(token) and self._sessions.get(token) == user_id


class InMemoryAuthorizer:
    """Allow-list per conversation. With ``open_conversations`` every join is allowed."""

    def __init__(self, open_conversations: bool = False):
        self.open_conversations = open_conversations
        self._allowed: Dict[str, Set[str]] = {}

    def grant(self, conversation_id: str, *user_ids: str):
        self._allowed.setdefault(conversation_id, set()).update(user_ids)

    def revoke(self, conversation_id: str, user_id: str):
        self._allowed.get(conversation_id, set()).discard(user_id)

    async def can_join(self, user_id: str, conversation_id: str) -> bool:
        if self.open_conversations:
            return True
        return user_id in self._allowed.get(conversation_id, ())


class InMemoryMessageStore:
    def __init__(self, retention: int = 1000):
        self.retention = retention
        self.available = True
        self._messages: Dict[str, List[Message]] = {}

    async def persist(self, message: Message) -> bool:
        if not self.available:
            return False
        messages = self._messages.setdefault(message.conversation_id, [])
        messages.append(message)
        del messages[:-self.retention]
        return True

    async def recent(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        return list(self._messages.get(conversation_id, [])[-limit:])

    def stored(self, conversation_id: str) -> List[Message]:
        return list(self._messages.get(conversation_id, []))
