import logging
from typing import Dict, Optional

from playsync.config import settings
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.session_store import build_session_store

logger = logging.getLogger(__name__)


class BGGAuthSessionManager:
    """
    Keeps logged-in BGG sessions (cookies), one per BGG username.

    Strategy:
    - Cookies are cached (Redis if REDIS_URL, else in-memory).
    - ensure_session() logs in if the cache is empty/expired.
    - invalidate() clears the cached session, forcing re-login.
    """

    def __init__(self, client: BGGApiClient, store=None, ttl_seconds: Optional[int] = None) -> None:
        self._client = client
        self._store = store
        self._ttl_seconds = ttl_seconds or settings.BGG_SESSION_CACHE_TTL_SECONDS

    async def _get_store(self):
        if self._store is None:
            self._store = await build_session_store()
        return self._store

    @staticmethod
    def _key(username: str) -> str:
        return username.strip().casefold()

    async def invalidate(self, username: str) -> None:
        store = await self._get_store()
        await store.delete(self._key(username))
        logger.info("BGG session cache: INVALIDATE (%s)", username)

    async def ensure_session(self, username: str, password: str) -> Dict[str, str]:
        store = await self._get_store()
        cached = await store.get(self._key(username))
        if cached:
            logger.info("BGG session cache: HIT (%s)", username)
            return cached

        logger.info("BGG session cache: MISS (%s)", username)
        logger.info("BGG login: starting")
        cookies = await self._client.login(username, password)
        logger.info("BGG login: success")

        await store.set(self._key(username), cookies, ttl_seconds=self._ttl_seconds)
        return cookies
