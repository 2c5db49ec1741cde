"""NOEST (Nord & West) integration."""

from typing import Dict, Iterable, List, Optional

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.core import status
from ordersync_api.core.errors import ConfigurationError, TransportError
from ordersync_api.core.logger import setup_logger
from ordersync_api.models.carrier import CarrierShipment

logger = setup_logger(__name__)

TRACKINGS_PATH = "/get/trackings/info"


class NoestProvider(ShippingProvider):
    """
    NOEST public API.

    Every call is a POST carrying api_token and user_guid in the body. NOEST
    only knows tracking numbers, which are also what we store as the order
    reference for NOEST shipments, and offers no listing endpoint.
    """

    SLUG = "nord_west"
    DEFAULT_BASE_URL = "https://app.noest-dz.com/api/public"
    STATUS_MAPPING = {
        "upload": status.CREATED,
        "customer_validation": status.CREATED,
        "validation_collect_colis": status.PICKUP_REQUESTED,
        "validation_reception_admin": status.IN_PROGRESS,
        "validation_reception": status.SHIPPED,
        "fdr_activated": status.OUT_FOR_DELIVERY,
        "sent_to_redispatch": status.OUT_FOR_DELIVERY,
        "nouvel_tentative_asked_by_customer": status.POSTPONED,
        "mise_a_jour": status.DELIVERY_FAILED,
        "colis_suspendu": status.ON_HOLD,
        "return_asked_by_customer": status.READY_TO_RETURN,
        "return_asked_by_hub": status.IN_TRANSIT_RETURN,
        "retour_dispatched_to_partenaires": status.IN_TRANSIT_RETURN,
        "return_dispatched_to_partenaire": status.IN_TRANSIT_RETURN,
        "colis_retour_transmit_to_partner": status.IN_TRANSIT_RETURN,
        "livraison_echoue_recu": status.RETURNED,
        "return_validated_by_partener": status.RETURNED,
        "return_redispatched_to_livraison": status.OUT_FOR_DELIVERY,
        "return_dispatched_to_warehouse": status.IN_TRANSIT_RETURN,
        "livre": status.DELIVERED,
        "livred": status.DELIVERED,
        "ask_to_delete_by_admin": status.CANCELLED,
        "ask_to_delete_by_hub": status.CANCELLED,
    }

    def __init__(self, credential, rate_limiter, **options):
        if not credential.account_id:
            raise ConfigurationError(
                f"NOEST credential {credential.credential_id} needs a user guid (ACCOUNT)"
            )
        super().__init__(credential, rate_limiter, **options)

    @classmethod
    def normalize_code(cls, code):
        return str(code).strip().lower()

    async def _post_trackings(self, trackings: List[str]) -> dict:
        response = await self._request(
            "POST",
            TRACKINGS_PATH,
            json={
                "api_token": self.credential.secret_key,
                "user_guid": self.credential.account_id,
                "trackings": trackings,
            },
        )
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from NOEST: {e}") from e
        return data if isinstance(data, dict) else {}

    def _to_shipment(self, tracking: str, info) -> Optional[CarrierShipment]:
        if not isinstance(info, dict):
            return None
        activity = info.get("activity") or []
        if not activity:
            return None
        latest = activity[0]
        return CarrierShipment(
            reference=tracking,
            native_status=latest.get("event_key") or latest.get("event"),
            tracking_number=tracking,
            carrier_order_id=tracking,
            credential_id=self.credential_id,
            last_update=latest.get("date"),
        )

    async def fetch_bulk(self, max_results: int) -> List[CarrierShipment]:
        logger.debug(f"NOEST {self.credential_id}: no listing endpoint, bulk fetch skipped")
        return []

    async def fetch_by_reference(self, reference: str) -> Optional[CarrierShipment]:
        data = await self._post_trackings([reference])
        return self._to_shipment(reference, data.get(reference))

    async def fetch_status(self, tracking_numbers: Iterable[str]) -> Dict[str, CarrierShipment]:
        trackings = list(tracking_numbers)
        if not trackings:
            return {}
        data = await self._post_trackings(trackings)
        found = {}
        for tracking in trackings:
            shipment = self._to_shipment(tracking, data.get(tracking))
            if shipment:
                found[tracking] = shipment
        return found

    async def lookup_tracking_numbers(self, references: Iterable[str]) -> Dict[str, str]:
        # References are NOEST tracking numbers already
        shipments = await self.fetch_status(references)
        return {reference: shipment.tracking_number for reference, shipment in shipments.items()}

    async def test_connection(self) -> bool:
        try:
            await self._post_trackings(["TEST"])
            return True
        except Exception as e:
            logger.error(f"NOEST connection test failed for {self.credential_id}: {e}")
            return False
