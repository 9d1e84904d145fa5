import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from playsync.config import settings
from playsync.services.bgg.errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Process-wide gate in front of every BGG request.

    - At most one caller passes at a time (asyncio.Lock, FIFO).
    - Consecutive passes are at least `min_interval` seconds apart.
    - A caller that would wait longer than `wait_timeout` gets RateLimited.
    - defer() pushes the next slot out after a 429 so every caller backs off.
    """

    def __init__(
        self,
        min_interval: Optional[float] = None,
        wait_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = settings.BGG_MIN_SECONDS_BETWEEN_REQUESTS if min_interval is None else min_interval
        self.wait_timeout = settings.BGG_RATE_LIMIT_WAIT_TIMEOUT_SECONDS if wait_timeout is None else wait_timeout
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_allowed_at: float = 0.0

    async def acquire(self) -> None:
        started = self._clock()
        acquiring = asyncio.ensure_future(self._lock.acquire())
        try:
            await asyncio.wait_for(asyncio.shield(acquiring), timeout=self.wait_timeout)
        except asyncio.CancelledError:
            self._abandon(acquiring)
            raise
        except asyncio.TimeoutError:
            self._abandon(acquiring)
            raise RateLimited(f"waited more than {self.wait_timeout:.0f}s for the BGG request gate")

        try:
            now = self._clock()
            delay = self._next_allowed_at - now
            if delay > 0:
                if (now - started) + delay > self.wait_timeout:
                    raise RateLimited(
                        f"next BGG request slot is {delay:.1f}s away (limit {self.wait_timeout:.0f}s)",
                        retry_after=delay,
                    )
                logger.debug("Rate limit gate: waiting %.2fs", delay)
                await self._sleep(delay)
                now = self._clock()
            self._next_allowed_at = max(self._next_allowed_at, now + self.min_interval)
        finally:
            self._lock.release()

    def _abandon(self, acquiring: asyncio.Future) -> None:
        # the lock can be granted in the same tick the wait gives up; hand it straight back
        if acquiring.done() and not acquiring.cancelled():
            self._lock.release()
        else:
            acquiring.cancel()

    def defer(self, seconds: float) -> None:
        self._next_allowed_at = max(self._next_allowed_at, self._clock() + seconds)


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter
