"""
Per-store ingestion position kept in the shared cache.

Losing the cache is not fatal: callers fall back to the canonical store for
the highest ingested id and to a page search (or a full scan) for the page.
"""

import json
import time
from dataclasses import asdict, dataclass
from typing import Optional

from ordersync_api.config.constants import CURSOR_TTL_SECONDS, REDIS_CURSOR_KEY, REDIS_LAST_ID_KEY
from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class SyncCursor:
    """Last confirmed page position of a store."""
    store_identifier: str
    last_page: int
    first_id: Optional[int]
    last_id: Optional[int]
    timestamp: float


class CursorTracker:
    """Reads and writes SyncCursor and highest-ingested-id entries."""

    def __init__(self, cache, ttl: int = CURSOR_TTL_SECONDS):
        self.cache = cache
        self.ttl = ttl

    async def get_cursor(self, store_identifier: str) -> Optional[SyncCursor]:
        try:
            raw = await self.cache.get(REDIS_CURSOR_KEY.format(store=store_identifier))
        except Exception as e:
            logger.warning(f"Cursor read failed for {store_identifier}: {e}")
            return None
        if not raw:
            return None
        try:
            return SyncCursor(**json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding corrupt cursor for {store_identifier}: {e}")
            return None

    async def save_cursor(
        self,
        store_identifier: str,
        page: int,
        first_id: Optional[int],
        last_id: Optional[int],
    ) -> None:
        cursor = SyncCursor(
            store_identifier=store_identifier,
            last_page=page,
            first_id=first_id,
            last_id=last_id,
            timestamp=time.time(),
        )
        try:
            await self.cache.set(
                REDIS_CURSOR_KEY.format(store=store_identifier),
                json.dumps(asdict(cursor)),
                ex=self.ttl,
            )
        except Exception as e:
            logger.warning(f"Cursor write failed for {store_identifier}: {e}")

    async def get_last_id(self, store_identifier: str) -> Optional[int]:
        try:
            raw = await self.cache.get(REDIS_LAST_ID_KEY.format(store=store_identifier))
            return int(raw) if raw else None
        except Exception as e:
            logger.warning(f"Last id read failed for {store_identifier}: {e}")
            return None

    async def save_last_id(self, store_identifier: str, native_id: int) -> None:
        """Store the highest ingested id; never moves backwards."""
        current = await self.get_last_id(store_identifier)
        if current is not None and current >= native_id:
            return
        try:
            await self.cache.set(
                REDIS_LAST_ID_KEY.format(store=store_identifier),
                str(native_id),
                ex=self.ttl,
            )
        except Exception as e:
            logger.warning(f"Last id write failed for {store_identifier}: {e}")

    async def reset(self, store_identifier: str) -> None:
        try:
            await self.cache.delete(
                REDIS_CURSOR_KEY.format(store=store_identifier),
                REDIS_LAST_ID_KEY.format(store=store_identifier),
            )
        except Exception as e:
            logger.warning(f"Cursor reset failed for {store_identifier}: {e}")
