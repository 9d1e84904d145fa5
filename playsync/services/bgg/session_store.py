import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from playsync.config import settings

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    def __init__(self) -> None:
        self._values: Dict[str, Tuple[Dict[str, Any], float]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.time() >= expires_at:
            self._values.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        self._values[key] = (value, time.time() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class RedisSessionStore:
    def __init__(self, redis_client: Any, prefix: str = "bgg:session:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(self._prefix + key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Session store: dropping unreadable entry for %s", key)
            await self.delete(key)
            return None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        await self._redis.set(self._prefix + key, json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._prefix + key)


async def build_session_store(redis_url: Optional[str] = None):
    """
    Redis when REDIS_URL is set and answers a ping, otherwise in-memory.
    Logs which backend is used and why.
    """
    redis_url = redis_url if redis_url is not None else settings.REDIS_URL

    if not redis_url:
        logger.info("Session store backend: In-memory (REDIS_URL not set)")
        return InMemorySessionStore()

    client = redis.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.warning(
            "Redis configured (REDIS_URL set) but ping failed; falling back to in-memory (%s)",
            e.__class__.__name__,
        )
        return InMemorySessionStore()

    logger.info("Session store backend: Redis")
    return RedisSessionStore(client)
