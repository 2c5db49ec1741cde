"""Yalidine / Guepex integration (same API, Guepex is a Yalidine brand)."""

from typing import Dict, Iterable, List, Optional

from ordersync_api.api.carriers.base import ShippingProvider
from ordersync_api.config.constants import YALIDINE_MIN_DELAY_SECONDS
from ordersync_api.core import status
from ordersync_api.core.errors import ConfigurationError
from ordersync_api.core.logger import setup_logger
from ordersync_api.models.carrier import CarrierShipment

logger = setup_logger(__name__)


class YalidineProvider(ShippingProvider):
    """Yalidine v1 API (`X-API-ID` / `X-API-TOKEN`), French status labels."""

    SLUG = "guepex"
    DEFAULT_BASE_URL = "https://api.yalidine.app/v1"
    DEFAULT_MIN_DELAY = YALIDINE_MIN_DELAY_SECONDS
    STATUS_MAPPING = {
        "Pas encore expédié": status.CREATED,
        "A vérifier": status.ON_HOLD,
        "En préparation": status.IN_PROGRESS,
        "Pas encore ramassé": status.PICKUP_REQUESTED,
        "Prêt à expédier": status.READY_TO_SHIP,
        "Ramassé": status.SHIPPED,
        "Bloqué": status.ON_HOLD,
        "Débloqué": status.IN_PROGRESS,
        "Transfert": status.IN_TRANSIT,
        "Expédié": status.SHIPPED,
        "Centre": status.IN_TRANSIT,
        "En localisation": status.IN_TRANSIT,
        "Vers Wilaya": status.IN_TRANSIT,
        "Reçu à Wilaya": status.AWAITING_TRANSIT,
        "En attente du client": status.ON_HOLD,
        "Sorti en livraison": status.OUT_FOR_DELIVERY,
        "En attente": status.ON_HOLD,
        "En alerte": status.ALERTED,
        "Tentative échouée": status.DELIVERY_FAILED,
        "Livré": status.DELIVERED,
        "Echèc livraison": status.DELIVERY_FAILED,
        "Retour vers centre": status.IN_TRANSIT_RETURN,
        "Retourné au centre": status.IN_TRANSIT_RETURN,
        "Retour transfert": status.IN_TRANSIT_RETURN,
        "Retour groupé": status.IN_TRANSIT_RETURN,
        "Retour à retirer": status.READY_TO_RETURN,
        "Retour vers vendeur": status.IN_TRANSIT_RETURN,
        "Retourné au vendeur": status.RETURNED,
        "Echange échoué": status.DELIVERY_FAILED,
    }

    def __init__(self, credential, rate_limiter, **options):
        if not credential.account_id:
            raise ConfigurationError(
                f"Yalidine credential {credential.credential_id} needs an API id (ACCOUNT)"
            )
        super().__init__(credential, rate_limiter, **options)

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "X-API-ID": self.credential.account_id,
            "X-API-TOKEN": self.credential.secret_key,
        }

    def _to_shipment(self, parcel: dict) -> Optional[CarrierShipment]:
        reference = parcel.get("order_id")
        if not reference:
            return None
        return CarrierShipment(
            reference=str(reference),
            native_status=parcel.get("last_status"),
            tracking_number=parcel.get("tracking"),
            carrier_order_id=parcel.get("tracking"),
            credential_id=self.credential_id,
            last_update=parcel.get("date_last_status"),
        )

    async def _fetch_parcels(self, params: dict) -> dict:
        return await self._get_json("/parcels", params=params) or {}

    async def fetch_bulk(self, max_results: int) -> List[CarrierShipment]:
        first = await self._fetch_parcels({"page": 1, "page_size": self.page_size})
        parcels = list(first.get("data") or [])
        total = min(int(first.get("total_data") or len(parcels)), max_results)
        last_page = -(-total // self.page_size)

        if first.get("has_more"):
            fetchers = [
                self._fetch_parcels({"page": page, "page_size": self.page_size})
                for page in range(2, last_page + 1)
            ]
            for data in await self._gather_pages(fetchers):
                parcels.extend(data.get("data") or [])

        shipments = [s for s in map(self._to_shipment, parcels[:max_results]) if s]
        logger.info(f"Yalidine {self.credential_id}: fetched {len(shipments)} parcels")
        return shipments

    async def fetch_by_reference(self, reference: str) -> Optional[CarrierShipment]:
        data = await self._fetch_parcels({"order_id": reference})
        parcels = data.get("data") or []
        return self._to_shipment(parcels[0]) if parcels else None

    async def fetch_status(self, tracking_numbers: Iterable[str]) -> Dict[str, CarrierShipment]:
        trackings = list(tracking_numbers)
        if not trackings:
            return {}
        data = await self._fetch_parcels({"tracking": ",".join(trackings)})
        found = {}
        for parcel in data.get("data") or []:
            shipment = self._to_shipment(parcel)
            if shipment and parcel.get("tracking"):
                found[parcel["tracking"]] = shipment
        return found

    async def test_connection(self) -> bool:
        try:
            await self._get_json("/wilayas")
            return True
        except Exception as e:
            logger.error(f"Yalidine connection test failed for {self.credential_id}: {e}")
            return False
