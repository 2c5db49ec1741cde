"""Common interface of every carrier integration."""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Union

import httpx

from ordersync_api.api.base import BaseAPIClient
from ordersync_api.config.constants import (
    CARRIER_BULK_FAN_OUT,
    CARRIER_BULK_PAGE_SIZE,
    CARRIER_MIN_DELAY_SECONDS,
)
from ordersync_api.config.credentials import CarrierCredential
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.status import unknown_status
from ordersync_api.models.carrier import CarrierShipment

logger = setup_logger(__name__)


class ShippingProvider(BaseAPIClient, ABC):
    """
    One carrier credential wrapped as an API client.

    Subclasses set SLUG, DEFAULT_BASE_URL and STATUS_MAPPING (native code ->
    canonical shipping status) and implement the fetch operations.
    """

    SLUG: str = ""
    DEFAULT_BASE_URL: str = ""
    DEFAULT_MIN_DELAY: float = CARRIER_MIN_DELAY_SECONDS
    STATUS_MAPPING: Dict[Union[int, str], str] = {}

    def __init__(
        self,
        credential: CarrierCredential,
        rate_limiter,
        min_delay: Optional[float] = None,
        page_size: int = CARRIER_BULK_PAGE_SIZE,
        fan_out: int = CARRIER_BULK_FAN_OUT,
        http_client: Optional[httpx.AsyncClient] = None,
        **retry_options,
    ):
        super().__init__(
            base_url=credential.base_url or self.DEFAULT_BASE_URL,
            rate_limiter=rate_limiter,
            rate_limit_key=f"carrier:{self.SLUG}:{credential.credential_id}",
            min_delay=self.DEFAULT_MIN_DELAY if min_delay is None else min_delay,
            http_client=http_client,
            **retry_options,
        )
        self.credential = credential
        self.page_size = page_size
        self.fan_out = fan_out

    @property
    def credential_id(self) -> str:
        return self.credential.credential_id

    @classmethod
    def normalize_code(cls, code):
        """Turn a native code into the key type used by STATUS_MAPPING."""
        return str(code).strip()

    @classmethod
    def map_status(cls, code) -> str:
        """
        Map a carrier native status to the canonical shipping status.

        Unmapped codes degrade to UNKNOWN(<code>) instead of failing.
        """
        label = cls.STATUS_MAPPING.get(cls.normalize_code(code))
        if label is None:
            logger.warning(f"Unmapped {cls.SLUG} status code: {code}")
            return unknown_status(code)
        return label

    @abstractmethod
    async def fetch_bulk(self, max_results: int) -> List[CarrierShipment]:
        """Fetch up to `max_results` recent shipments of this credential."""

    @abstractmethod
    async def fetch_by_reference(self, reference: str) -> Optional[CarrierShipment]:
        """Fetch the shipment for one order reference; None when unknown."""

    @abstractmethod
    async def fetch_status(self, tracking_numbers: Iterable[str]) -> Dict[str, CarrierShipment]:
        """Fetch shipments by tracking number, keyed by tracking number."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check that the credential is accepted."""

    async def lookup_tracking_numbers(self, references: Iterable[str]) -> Dict[str, str]:
        """
        Resolve tracking numbers for order references.

        Returns:
            Mapping of reference -> tracking number for the references found
        """
        found = {}
        for reference in references:
            shipment = await self.fetch_by_reference(reference)
            if shipment and shipment.tracking_number:
                found[reference] = shipment.tracking_number
        logger.info(
            f"{self.SLUG}/{self.credential_id}: resolved {len(found)} tracking number(s)"
        )
        return found

    async def _gather_pages(self, fetchers) -> List[list]:
        """
        Run page fetch coroutines with at most `fan_out` in flight.

        A failed page is logged and dropped; the remaining pages still count.
        """
        semaphore = asyncio.Semaphore(self.fan_out)

        async def bounded(fetcher):
            async with semaphore:
                return await fetcher

        results = await asyncio.gather(*(bounded(f) for f in fetchers), return_exceptions=True)
        pages = []
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"{self.SLUG}/{self.credential_id}: bulk page failed: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            pages.append(result)
        return pages
