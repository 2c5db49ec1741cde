"""
Ingestion Service for storefront orders.

Runs full and incremental page scans per store, materializes the new orders
and keeps each store's cursor current. Stores are processed one after the
other in store-identifier order.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

from ordersync_api.api.source_client import SourceClient, SourcePage
from ordersync_api.config.constants import (
    ELIGIBLE_SOURCE_STATES,
    MAX_EMPTY_PAGES,
    RESCAN_WINDOW_PAGES,
    SOURCE_NAME,
    STORE_DELAY_SECONDS,
)
from ordersync_api.core.errors import SyncError
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.monitoring import capture_exception, set_sync_context
from ordersync_api.db.models import SourceConfig
from ordersync_api.models.source import SourceOrder
from ordersync_worker.services.cursor_tracker import CursorTracker
from ordersync_worker.services.materializer import Materializer, MaterializeOutcome

logger = setup_logger(__name__)

FULL = "full"
INCREMENTAL = "incremental"


@dataclass
class ScanResult:
    """Orders collected by one scan."""
    mode: str
    orders: List[SourceOrder] = field(default_factory=list)
    pages: List[int] = field(default_factory=list)
    error: Optional[str] = None
    # Page holding the highest id known once this scan is ingested
    frontier_page: Optional[int] = None
    frontier_first_id: Optional[int] = None
    frontier_last_id: Optional[int] = None
    frontier_id: Optional[int] = None

    def track_frontier(self, page: SourcePage, last_known_id: int) -> None:
        newer = [o.id for o in page.orders if o.id > last_known_id]
        if newer:
            candidate = max(newer)
        elif page.min_id is not None and page.min_id <= last_known_id:
            candidate = last_known_id
        else:
            return
        if self.frontier_id is None or candidate > self.frontier_id:
            self.frontier_id = candidate
            self.frontier_page = page.page
            self.frontier_first_id = page.max_id
            self.frontier_last_id = page.min_id


@dataclass
class StoreSyncResult:
    """Result of syncing one store."""
    store_identifier: str
    mode: str
    started_at: float
    completed_at: float = 0.0
    pages_fetched: int = 0
    orders_fetched: int = 0
    created: int = 0
    skipped: int = 0
    ineligible: int = 0
    errors: List[str] = field(default_factory=list)
    last_native_id: Optional[int] = None
    success: bool = False


@dataclass
class IngestionResult:
    """Result of an ingestion run over all stores."""
    started_at: float
    completed_at: float
    stores: List[dict]
    created: int
    errors: int
    success: bool


class IngestionService:
    """Incremental, cursor-driven ingestion of new orders per store."""

    def __init__(
        self,
        repository,
        cursor_tracker: CursorTracker,
        materializer: Materializer,
        client_factory: Callable[[SourceConfig], SourceClient],
        window_pages: int = RESCAN_WINDOW_PAGES,
        max_empty_pages: int = MAX_EMPTY_PAGES,
        store_delay_seconds: float = STORE_DELAY_SECONDS,
        source: str = SOURCE_NAME,
    ):
        self.repository = repository
        self.cursor_tracker = cursor_tracker
        self.materializer = materializer
        self.client_factory = client_factory
        self.window_pages = window_pages
        self.max_empty_pages = max_empty_pages
        self.store_delay_seconds = store_delay_seconds
        self.source = source

    async def full_scan(self, client: SourceClient) -> ScanResult:
        """
        Page forward from page 1 until an empty or short page.

        Nothing is persisted here; `sync_store` saves the cursor and the
        highest ingested id once the scan has completed without error.
        """
        scan = ScanResult(mode=FULL)
        page = 1
        try:
            while True:
                result = await client.fetch_page(page)
                scan.pages.append(page)
                if not result.orders:
                    break
                scan.orders.extend(result.orders)
                scan.track_frontier(result, 0)
                if not result.has_more:
                    break
                page += 1
        except SyncError as e:
            scan.error = f"Page {page}: {e}"
            logger.error(f"Full scan of {client.store_identifier} stopped at page {page}: {e}")
        return scan

    async def incremental_scan(
        self,
        client: SourceClient,
        cursor_page: int,
        last_known_id: int,
        start_page: Optional[int] = None,
    ) -> ScanResult:
        """
        Re-scan the window [cursor_page - W, cursor_page + W].

        Only orders above `last_known_id` are collected. The scan stops after
        `max_empty_pages` consecutive empty pages, at the first short page, or
        once W consecutive pages past the cursor hold nothing new. When the
        last page of the window is entirely newer than `last_known_id` the
        window grows by one page, so a backlog longer than W pages is still
        read to its end.

        Args:
            start_page: First page to read instead of cursor_page - W
        """
        scan = ScanResult(mode=INCREMENTAL)
        start = start_page or max(1, cursor_page - self.window_pages)
        end = cursor_page + self.window_pages
        empty_pages = 0
        stale_pages = 0

        page = start
        try:
            while page <= end:
                result = await client.fetch_page(page)
                scan.pages.append(page)

                if not result.orders:
                    empty_pages += 1
                    if empty_pages >= self.max_empty_pages:
                        break
                    page += 1
                    continue
                empty_pages = 0
                scan.track_frontier(result, last_known_id)

                new_orders = [o for o in result.orders if o.id > last_known_id]
                if new_orders:
                    stale_pages = 0
                    scan.orders.extend(new_orders)
                    if page == end and result.min_id > last_known_id:
                        end += 1
                elif page > cursor_page:
                    stale_pages += 1
                    if stale_pages >= self.window_pages:
                        break

                if not result.has_more:
                    break
                page += 1
        except SyncError as e:
            scan.error = f"Page {page}: {e}"
            logger.error(f"Incremental scan of {client.store_identifier} stopped at page {page}: {e}")

        logger.info(
            f"Incremental scan of {client.store_identifier}: {len(scan.pages)} page(s) from {start}, "
            f"{len(scan.orders)} new order(s)"
        )
        return scan

    async def _last_known_id(self, store_identifier: str) -> Optional[int]:
        last_id = await self.cursor_tracker.get_last_id(store_identifier)
        if last_id is None:
            # Cache lost or first run: the canonical store is the fallback
            last_id = await self.repository.max_native_id(self.source, store_identifier)
        return last_id

    async def sync_store(self, config: SourceConfig, full: bool = False) -> StoreSyncResult:
        """
        Ingest new orders of one store.

        Failures are recorded in the result, never raised, so the caller can
        move on to the next store.
        """
        store = config.store_identifier
        set_sync_context("ingestion", store=store)
        result = StoreSyncResult(store_identifier=store, mode=FULL if full else INCREMENTAL, started_at=time.time())
        client = None

        try:
            client = self.client_factory(config)
            if not await client.test_connection():
                result.errors.append(f"Connection test failed for store {store}")
                return result

            last_known_id = await self._last_known_id(store)
            if full or not last_known_id:
                result.mode = FULL
                scan = await self.full_scan(client)
            else:
                cursor = await self.cursor_tracker.get_cursor(store)
                start_page = None
                if cursor is not None:
                    cursor_page = cursor.last_page
                else:
                    cursor_page = await client.find_page_with_order_id(last_known_id)
                    logger.info(f"Seeded cursor of {store} at page {cursor_page}")
                    # Every page before the seeded one holds newer orders
                    start_page = 1
                scan = await self.incremental_scan(client, cursor_page, last_known_id, start_page=start_page)

            result.pages_fetched = len(scan.pages)
            result.orders_fetched = len(scan.orders)
            if scan.error:
                result.errors.append(scan.error)

            newest = None
            failed_ids = []
            for order in scan.orders:
                if scan.mode == INCREMENTAL and order.order_state_name not in ELIGIBLE_SOURCE_STATES:
                    result.ineligible += 1
                    continue

                outcome = await self.materializer.materialize(order, store)
                if outcome == MaterializeOutcome.CREATED:
                    result.created += 1
                elif outcome == MaterializeOutcome.SKIPPED:
                    result.skipped += 1
                else:
                    result.errors.append(f"Failed to materialize order {order.id}")
                    failed_ids.append(order.id)
                    continue
                newest = order.id if newest is None else max(newest, order.id)

            if failed_ids and newest is not None:
                # Stay below the first failure so the next run retries it
                newest = min(newest, min(failed_ids) - 1)

            if scan.error:
                # Orders behind the failed page are older than what was read,
                # so neither the last id nor the cursor may move past them
                logger.warning(
                    f"Store {store}: scan incomplete, keeping last id {last_known_id}",
                    extra={"store": store},
                )
                if not last_known_id:
                    # Zero forces a full scan on the next run instead of the DB fallback
                    await self.cursor_tracker.save_last_id(store, 0)
                newest = None
            else:
                if newest is not None:
                    await self.cursor_tracker.save_last_id(store, newest)
                if scan.frontier_page is not None:
                    await self.cursor_tracker.save_cursor(
                        store, scan.frontier_page, scan.frontier_first_id, scan.frontier_last_id
                    )
            result.last_native_id = newest or last_known_id
            result.success = not result.errors or result.created > 0

            logger.info(
                f"Store {store} ({result.mode}): {result.created} created, {result.skipped} skipped, "
                f"{result.ineligible} ineligible, {len(result.errors)} error(s)",
                extra={"store": store},
            )

        except Exception as e:
            logger.error(f"Sync of store {store} failed: {e}", exc_info=True)
            capture_exception(e, context={"store": store})
            result.errors.append(f"Store {store}: {e}")

        finally:
            result.completed_at = time.time()
            if client is not None:
                await client.close()

        return result

    async def sync_all_stores(self, full: bool = False, store_identifier: Optional[str] = None) -> IngestionResult:
        """
        Sync every active store sequentially.

        Raises:
            Exception: when the store list itself cannot be read (run-level failure)
        """
        started_at = time.time()
        sources = await self.repository.list_active_sources()
        if store_identifier:
            sources = [s for s in sources if s.store_identifier == store_identifier]

        logger.info(f"Starting ingestion for {len(sources)} store(s)")
        store_results = []
        for index, config in enumerate(sources):
            if index > 0 and self.store_delay_seconds:
                await asyncio.sleep(self.store_delay_seconds)
            store_results.append(await self.sync_store(config, full=full))

        created = sum(r.created for r in store_results)
        errors = sum(len(r.errors) for r in store_results)
        return IngestionResult(
            started_at=started_at,
            completed_at=time.time(),
            stores=[asdict(r) for r in store_results],
            created=created,
            errors=errors,
            success=all(r.success for r in store_results),
        )
