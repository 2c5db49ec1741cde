"""
Minimum-delay rate limiter backed by the shared cache.

Each key (e.g. "source:store-a" or "carrier:maystro:key_1") keeps the
timestamp of its last request. Before the next request the limiter sleeps
whatever remains of the key's minimum delay, then records a new timestamp.
The same cache holds the per-store cool-down flags set after sustained 429s.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

from ordersync_api.config.constants import (
    RATE_LIMIT_KEY_TTL_SECONDS,
    REDIS_RATE_LIMIT_FLAG_KEY,
    REDIS_RATE_LIMIT_KEY,
)
from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


class RateLimiter:
    """Token bucket of one per key."""

    def __init__(
        self,
        cache,
        min_delay: float,
        key_ttl: int = RATE_LIMIT_KEY_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable = asyncio.sleep,
    ):
        """
        Args:
            cache: Async Redis-compatible client
            min_delay: Default minimum seconds between two requests on a key
            key_ttl: Expiry of the stored timestamps
            clock: Wall-clock source (shared across processes)
            sleep: Coroutine used to wait
        """
        self.cache = cache
        self.min_delay = min_delay
        self.key_ttl = key_ttl
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def acquire(self, key: str, min_delay: Optional[float] = None) -> float:
        """
        Wait until a request on `key` is allowed.

        Returns:
            Seconds slept
        """
        delay = self.min_delay if min_delay is None else min_delay
        cache_key = REDIS_RATE_LIMIT_KEY.format(key=key)

        # Concurrent callers in this process queue up on the same key
        async with self._lock_for(key):
            waited = 0.0
            try:
                last = await self.cache.get(cache_key)
            except Exception as e:
                # Without the shared timestamp, fall back to always waiting
                logger.warning(f"Rate limiter cache read failed for {key}: {e}")
                await self._sleep(delay)
                return delay

            if last is not None:
                elapsed = self._clock() - float(last)
                if elapsed < delay:
                    waited = delay - elapsed
                    await self._sleep(waited)

            try:
                await self.cache.set(cache_key, str(self._clock()), ex=self.key_ttl)
            except Exception as e:
                logger.warning(f"Rate limiter cache write failed for {key}: {e}")

            return waited

    async def flag_store(self, store: str, ttl: int) -> None:
        """Mark a store as rate limited for `ttl` seconds."""
        try:
            await self.cache.set(
                REDIS_RATE_LIMIT_FLAG_KEY.format(store=store),
                str(self._clock()),
                ex=ttl,
            )
            logger.warning(f"Store {store} flagged as rate limited for {ttl}s", extra={"store": store})
        except Exception as e:
            logger.error(f"Failed to flag store {store}: {e}")

    async def is_store_flagged(self, store: str) -> bool:
        """Check whether a store is inside a rate-limit cool-down."""
        try:
            return await self.cache.exists(REDIS_RATE_LIMIT_FLAG_KEY.format(store=store)) > 0
        except Exception as e:
            logger.warning(f"Failed to read rate-limit flag for {store}: {e}")
            return False

    async def clear_store_flag(self, store: str) -> None:
        try:
            await self.cache.delete(REDIS_RATE_LIMIT_FLAG_KEY.format(store=store))
        except Exception as e:
            logger.warning(f"Failed to clear rate-limit flag for {store}: {e}")
