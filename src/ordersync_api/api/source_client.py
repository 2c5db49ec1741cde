"""Storefront (EcoManager-style) paginated order API client."""

from dataclasses import dataclass
from typing import List, Optional

import httpx

from ordersync_api.api.base import BaseAPIClient
from ordersync_api.config.constants import (
    MAX_SEARCH_PAGE,
    RATE_LIMIT_COOLDOWN_SECONDS,
    SOURCE_MIN_DELAY_SECONDS,
    SOURCE_PAGE_SIZE,
)
from ordersync_api.core.errors import ConfigurationError, RateLimitedError, TransportError
from ordersync_api.core.logger import setup_logger
from ordersync_api.models.source import SourceOrder

logger = setup_logger(__name__)


@dataclass
class SourcePage:
    """One page of orders, newest first."""
    page: int
    orders: List[SourceOrder]
    next_page: Optional[int]
    has_more: bool

    @property
    def min_id(self) -> Optional[int]:
        return min((o.id for o in self.orders), default=None)

    @property
    def max_id(self) -> Optional[int]:
        return max((o.id for o in self.orders), default=None)


class SourceClient(BaseAPIClient):
    """Client for one store's `/orders` endpoint."""

    def __init__(
        self,
        store_identifier: str,
        base_url: str,
        api_token: str,
        rate_limiter,
        page_size: int = SOURCE_PAGE_SIZE,
        min_delay: float = SOURCE_MIN_DELAY_SECONDS,
        cooldown_seconds: int = RATE_LIMIT_COOLDOWN_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        **retry_options,
    ):
        if not api_token:
            raise ConfigurationError(f"Missing API token for store {store_identifier}")
        super().__init__(
            base_url=base_url,
            rate_limiter=rate_limiter,
            rate_limit_key=f"source:{store_identifier}",
            min_delay=min_delay,
            http_client=http_client,
            **retry_options,
        )
        self.store_identifier = store_identifier
        self.api_token = api_token
        self.page_size = page_size
        self.cooldown_seconds = cooldown_seconds

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    async def fetch_page(self, page: int, per_page: Optional[int] = None) -> SourcePage:
        """
        Fetch one page of orders sorted newest first.

        Args:
            page: 1-based page number
            per_page: Page size override

        Returns:
            SourcePage with has_more False once a short page is seen

        Raises:
            RateLimitedError: after flagging the store for a cool-down
            TransportError / ConfigurationError: surfaced to the caller
        """
        size = per_page or self.page_size
        params = {"per_page": size, "page": page, "sort": "-id"}

        try:
            data = await self._get_json("/orders", params=params)
        except RateLimitedError:
            await self.rate_limiter.flag_store(self.store_identifier, self.cooldown_seconds)
            raise

        raw_orders = (data or {}).get("data") or []
        orders = []
        for raw in raw_orders:
            try:
                orders.append(SourceOrder.model_validate(raw))
            except ValueError as e:
                logger.warning(
                    f"Skipping malformed order on page {page} of {self.store_identifier}: {e}",
                    extra={"store": self.store_identifier},
                )

        has_more = len(raw_orders) >= size
        logger.debug(f"Store {self.store_identifier} page {page}: {len(orders)} orders")
        return SourcePage(
            page=page,
            orders=orders,
            next_page=page + 1 if has_more else None,
            has_more=has_more,
        )

    async def test_connection(self) -> bool:
        """Check the token by fetching a single order."""
        try:
            await self.fetch_page(1, per_page=1)
            return True
        except (TransportError, ConfigurationError) as e:
            logger.error(f"Connection test failed for store {self.store_identifier}: {e}")
            return False

    async def find_page_with_order_id(self, target_id: int, max_page: int = MAX_SEARCH_PAGE) -> int:
        """
        Locate the page holding `target_id` in O(log pages) requests.

        Pages are newest first, so higher pages hold smaller ids. Reads
        page 1, then doubles the page number until a page reaches down to
        the target, then binary-searches the bracketed range. When the id is
        not present (deleted order) the page just before its slot is returned.
        """
        first = await self.fetch_page(1)
        if not first.orders or target_id >= first.min_id:
            return 1

        # Galloping search: `left` always holds only ids newer than the target
        left, right = 1, 2
        while right <= max_page:
            candidate = await self.fetch_page(right)
            if not candidate.orders or candidate.min_id <= target_id:
                if candidate.orders and candidate.max_id >= target_id:
                    return right
                break
            left = right
            right *= 2
        right = min(right, max_page)

        lo, hi = left + 1, right
        while lo <= hi:
            mid = (lo + hi) // 2
            page = await self.fetch_page(mid)
            if page.orders and page.min_id <= target_id <= page.max_id:
                logger.info(f"Order {target_id} found on page {mid} of {self.store_identifier}")
                return mid
            if page.orders and page.min_id > target_id:
                lo = mid + 1
            else:
                hi = mid - 1

        fallback = max(1, lo - 1)
        logger.info(f"Order {target_id} not found exactly, using page {fallback}")
        return fallback
