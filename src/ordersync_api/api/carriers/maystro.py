"""Maystro Delivery integration."""

from typing import Dict, Iterable, List, Optional, Tuple

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.core import status
from ordersync_api.core.errors import TransportError
from ordersync_api.core.logger import setup_logger
from ordersync_api.models.carrier import CarrierShipment

logger = setup_logger(__name__)

ORDERS_PATH = "/api/stores/orders/"


class MaystroProvider(ShippingProvider):
    """Maystro store API (`Authorization: Token <key>`), integer status codes."""

    SLUG = "maystro"
    DEFAULT_BASE_URL = "https://backend.maystro-delivery.com"
    STATUS_MAPPING = {
        4: status.CREATED,
        5: status.PICKUP_REQUESTED,
        6: status.IN_PROGRESS,
        8: status.AWAITING_TRANSIT,
        9: status.IN_TRANSIT,
        10: status.IN_TRANSIT_RETURN,
        11: status.ON_HOLD,
        12: status.OUT_OF_STOCK,
        15: status.READY_TO_SHIP,
        22: status.ASSIGNED,
        31: status.SHIPPED,
        32: status.ALERTED,
        41: status.DELIVERED,
        42: status.POSTPONED,
        50: status.CANCELLED,
        51: status.READY_TO_RETURN,
        52: status.RETURNED_TO_STORE,
        53: status.NOT_RECEIVED,
    }

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "Authorization": f"Token {self.credential.secret_key}",
        }

    @classmethod
    def normalize_code(cls, code):
        try:
            return int(str(code).strip())
        except ValueError:
            return str(code)

    def _to_shipment(self, raw: dict) -> Optional[CarrierShipment]:
        reference = raw.get("external_order_id")
        if not reference:
            return None
        tracking = raw.get("tracking_number") or raw.get("display_id") or raw.get("instance_uuid")
        return CarrierShipment(
            reference=str(reference),
            native_status=raw.get("status"),
            tracking_number=str(tracking) if tracking else None,
            carrier_order_id=raw.get("instance_uuid"),
            credential_id=self.credential_id,
            last_update=raw.get("last_update"),
        )

    async def _fetch_orders(self, params: dict) -> Tuple[List[dict], int]:
        data = await self._get_json(ORDERS_PATH, params=params) or {}
        listing = data.get("list")
        if not isinstance(listing, dict) or not isinstance(listing.get("results"), list):
            raise TransportError(f"Unexpected Maystro response shape: {list(data)[:5]}")
        return listing["results"], int(listing.get("count") or 0)

    async def fetch_bulk(self, max_results: int) -> List[CarrierShipment]:
        """
        Fetch recent orders with limit/offset pages, `fan_out` pages in flight.

        The first page gives the total count, which bounds the remaining offsets.
        """
        first, count = await self._fetch_orders({"limit": self.page_size, "offset": 0})
        total = min(count, max_results)

        fetchers = [
            self._fetch_orders({"limit": min(self.page_size, total - offset), "offset": offset})
            for offset in range(self.page_size, total, self.page_size)
        ]
        raw_orders = list(first)
        for results, _ in await self._gather_pages(fetchers):
            raw_orders.extend(results)

        shipments = [s for s in map(self._to_shipment, raw_orders[:max_results]) if s]
        logger.info(
            f"Maystro {self.credential_id}: fetched {len(shipments)} orders ({count} available)",
            extra={"credential": self.credential_id},
        )
        return shipments

    async def fetch_by_reference(self, reference: str) -> Optional[CarrierShipment]:
        results, _ = await self._fetch_orders({"external_order_id": reference})
        for raw in results:
            if str(raw.get("external_order_id")) == reference:
                return self._to_shipment(raw)
        return None

    async def fetch_status(self, tracking_numbers: Iterable[str]) -> Dict[str, CarrierShipment]:
        """Maystro has no tracking search; identifiers are resolved as order references."""
        found = {}
        for identifier in tracking_numbers:
            shipment = await self.fetch_by_reference(identifier)
            if shipment:
                found[identifier] = shipment
        return found

    async def test_connection(self) -> bool:
        try:
            await self._fetch_orders({"limit": 1})
            return True
        except Exception as e:
            logger.error(f"Maystro connection test failed for {self.credential_id}: {e}")
            return False
