"""Conversation Membership Index: a bidirectional user <-> conversation map.

Memberships outlive connections. Only an explicit leave removes one, so a user
who reconnects is immediately back in all of their conversations.
Authorization is checked by the coordinator before ``join`` is called.
"""
from typing import Dict, FrozenSet, Set


class MembershipIndex:
    def __init__(self):
        self._members: Dict[str, Set[str]] = {}  # conversation_id -> user ids
        self._conversations: Dict[str, Set[str]] = {}  # user_id -> conversation ids

    def join(self, user_id: str, conversation_id: str) -> bool:
        """Add a membership. Returns False if it already existed."""
        members = self._members.setdefault(conversation_id, set())
        if user_id in members:
            return False
        members.add(user_id)
        self._conversations.setdefault(user_id, set()).add(conversation_id)
        return True

    def leave(self, user_id: str, conversation_id: str) -> bool:
        members = self._members.get(conversation_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        if not members:
            del self._members[conversation_id]
        conversations = self._conversations.get(user_id)
        if conversations is not None:
            conversations.discard(conversation_id)
            if not conversations:
                del self._conversations[user_id]
        return True

    def is_member(self, user_id: str, conversation_id: str) -> bool:
        return user_id in self._members.get(conversation_id, ())

    def members_of(self, conversation_id: str) -> FrozenSet[str]:
        return frozenset(self._members.get(conversation_id, ()))

    def conversations_of(self, user_id: str) -> FrozenSet[str]:
        return frozenset(self._conversations.get(user_id, ()))

    def conversation_count(self) -> int:
        return len(self._members)
