import asyncio
import json
from functools import partial
from typing import List, Optional

import redis

from constants import MESSAGE_RETENTION, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT, SESSION_TTL
from logging_config import get_logger
from redis_keys import REDIS_ACL_KEY, REDIS_MESSAGES_KEY, REDIS_SESSION_KEY
from schemas.protocol import Message

logger = get_logger(__name__)


class RedisBackend:
    """Blocking Redis access for sessions, conversation ACLs and message history."""

    def __init__(self, redis_client: Optional[redis.Redis] = None, retention: int = MESSAGE_RETENTION):
        self.redis_client = redis_client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        self.retention = retention
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    def ping(self) -> bool:
        try:
            self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            return False

    # sessions

    def create_session(self, token: str, user_id: str, ttl: int = SESSION_TTL):
        key = REDIS_SESSION_KEY.format(token=token)
        self.redis_client.set(key, user_id, ex=ttl or None)
        logger.debug(f"Session created for user {user_id} with TTL {ttl}")

    def get_session_user(self, token: str) -> Optional[str]:
        return self.redis_client.get(REDIS_SESSION_KEY.format(token=token))

    def delete_session(self, token: str):
        self.redis_client.delete(REDIS_SESSION_KEY.format(token=token))

    # conversation access

    def grant_access(self, conversation_id: str, *user_ids: str):
        if not user_ids:
            return
        key = REDIS_ACL_KEY.format(slug=conversation_id)
        added = self.redis_client.sadd(key, *user_ids)
        logger.debug(f"Granted {added} new users access to conversation {conversation_id}")

    def revoke_access(self, conversation_id: str, user_id: str):
        self.redis_client.srem(REDIS_ACL_KEY.format(slug=conversation_id), user_id)

    def has_access(self, conversation_id: str, user_id: str) -> bool:
        return bool(self.redis_client.sismember(REDIS_ACL_KEY.format(slug=conversation_id), user_id))

    # messages

    def append_message(self, conversation_id: str, message_json: str):
        key = REDIS_MESSAGES_KEY.format(slug=conversation_id)
        pipe = self.redis_client.pipeline()
        pipe.rpush(key, message_json)
        pipe.ltrim(key, -self.retention, -1)
        pipe.execute()

    def get_messages(self, conversation_id: str, limit: int) -> List[str]:
        if limit <= 0:
            return []
        key = REDIS_MESSAGES_KEY.format(slug=conversation_id)
        return self.redis_client.lrange(key, -limit, -1)


async def _run_blocking(func, *args):
    """Run a blocking Redis call in the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args))


class RedisIdentityService:
    def __init__(self, backend: RedisBackend):
        self.backend = backend

    async def verify(self, user_id: str, token: str) -> bool:
        if not token:
            return False
        session_user = await _run_blocking(self.backend.get_session_user, token)
        return session_user is not None and session_user == user_id


class RedisAuthorizer:
    def __init__(self, backend: RedisBackend):
        self.backend = backend

    async def can_join(self, user_id: str, conversation_id: str) -> bool:
        return await _run_blocking(self.backend.has_access, conversation_id, user_id)


class RedisMessageStore:
    def __init__(self, backend: RedisBackend):
        self.backend = backend

    async def persist(self, message: Message) -> bool:
        try:
            await _run_blocking(self.backend.append_message, message.conversation_id, message.model_dump_json(by_alias=True))
        except redis.RedisError as e:
            logger.error(f"Failed to persist message {message.id} in {message.conversation_id}: {e}")
            return False
        return True

    async def recent(self, conversation_id: str, limit: int) -> List[Message]:
        raw_messages = await _run_blocking(self.backend.get_messages, conversation_id, limit)
        messages = []
        for raw in raw_messages:
            try:
                messages.append(Message.model_validate(json.loads(raw)))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning(f"Skipping unreadable stored message in {conversation_id}: {e}")
        return messages


redis_backend = RedisBackend()
