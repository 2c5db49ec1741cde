"""
Shipping status reconciliation.

Joins canonical orders against carrier data: one bulk map built from every
credential, then per-reference lookups for the misses only.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ordersync_api.config.constants import (
    CARRIER_BULK_MAX_RESULTS,
    CARRIER_NOT_FOUND_MESSAGE,
    FALLBACK_CONCURRENCY,
    RECONCILE_MAX_ORDERS,
    RECONCILE_WRITE_BATCH_SIZE,
)
from ordersync_api.core.errors import SyncError, TransportError
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.monitoring import set_sync_context
from ordersync_api.core.status import DELIVERED, LifecycleStatus, is_transition_allowed
from ordersync_api.db.models import Order
from ordersync_api.db.repository import REJECTED, UNCHANGED, UPDATED, StatusUpdate
from ordersync_api.models.carrier import CarrierShipment
from ordersync_worker.services.credential_router import CredentialRouter

logger = setup_logger(__name__)

NOT_FOUND = "NOT_FOUND"
ERROR = "ERROR"


@dataclass
class ReconcileResult:
    """Result of a reconciliation run."""
    scope: str
    started_at: float
    completed_at: float = 0.0
    checked: int = 0
    updated: int = 0
    unchanged: int = 0
    not_found: int = 0
    rejected: int = 0
    errors: int = 0
    details: List[dict] = field(default_factory=list)
    success: bool = False


class Reconciler:
    """Refreshes carrier shipping status on canonical orders."""

    def __init__(
        self,
        repository,
        router: CredentialRouter,
        bulk_max_results: int = CARRIER_BULK_MAX_RESULTS,
        write_batch_size: int = RECONCILE_WRITE_BATCH_SIZE,
        fallback_concurrency: int = FALLBACK_CONCURRENCY,
        max_orders: int = RECONCILE_MAX_ORDERS,
    ):
        self.repository = repository
        self.router = router
        self.bulk_max_results = bulk_max_results
        self.write_batch_size = write_batch_size
        self.fallback_concurrency = fallback_concurrency
        self.max_orders = max_orders

    async def build_bulk_map(self) -> Tuple[Dict[str, CarrierShipment], int]:
        """
        Query every active credential and merge by reference.

        Credentials are visited in priority order, so on conflicting data the
        lower priority index wins.

        Returns:
            (reference -> shipment, number of credentials that failed)
        """
        bulk: Dict[str, CarrierShipment] = {}
        failures = 0
        for provider in self.router.providers:
            try:
                shipments = await provider.fetch_bulk(self.bulk_max_results)
                await self.router.record_usage(provider.credential_id, True)
            except SyncError as e:
                failures += 1
                await self.router.record_usage(provider.credential_id, False)
                logger.error(f"Bulk fetch failed for {provider.credential_id}: {e}")
                continue
            for shipment in shipments:
                bulk.setdefault(shipment.reference, shipment)
        logger.info(f"Bulk map holds {len(bulk)} reference(s) from {len(self.router.providers)} credential(s)")
        return bulk, failures

    async def lookup_reference(self, order: Order) -> Optional[CarrierShipment]:
        """
        Per-reference lookup through the credentials routed for the order's store.

        Returns None when every credential answered "not found".

        Raises:
            TransportError: no credential found it and at least one failed
        """
        last_error = None
        for provider in self.router.candidates_for(order.store_identifier):
            try:
                shipment = await provider.fetch_by_reference(order.reference)
                await self.router.record_usage(provider.credential_id, True)
            except SyncError as e:
                last_error = e
                await self.router.record_usage(provider.credential_id, False)
                logger.warning(f"Lookup of {order.reference} via {provider.credential_id} failed: {e}")
                continue
            if shipment is not None:
                return shipment
        if last_error is not None:
            raise TransportError(f"Lookup of {order.reference} failed: {last_error}")
        return None

    async def _fallback(self, orders: Sequence[Order]) -> Dict[str, object]:
        """Look up bulk misses with bounded concurrency; failures are returned, not raised."""
        semaphore = asyncio.Semaphore(self.fallback_concurrency)

        async def lookup(order: Order):
            async with semaphore:
                try:
                    return order.reference, await self.lookup_reference(order)
                except SyncError as e:
                    return order.reference, e

        return dict(await asyncio.gather(*(lookup(o) for o in orders)))

    def _map(self, shipment: CarrierShipment) -> str:
        provider = self.router.provider_for(shipment.credential_id) or self.router.primary
        return provider.map_status(shipment.native_status)

    async def reconcile(self, references: Optional[Sequence[str]] = None) -> ReconcileResult:
        """
        Reconcile all orders due for refresh, or only `references`.

        Per-order failures are counted in the result and never stop the run.
        Storage failures while selecting orders propagate (run-level failure).
        """
        scope = "references" if references is not None else "all"
        set_sync_context("reconciliation", scope=scope)
        result = ReconcileResult(scope=scope, started_at=time.time())

        if references is not None:
            orders = await self.repository.find_by_references(references)
        else:
            orders = await self.repository.orders_due_for_refresh(self.max_orders)
        result.checked = len(orders)
        logger.info(f"Reconciling {len(orders)} order(s) (scope={scope})")

        if not orders or not self.router.providers:
            if orders:
                logger.error("No carrier credentials configured, nothing to reconcile against")
                result.errors += 1
            result.completed_at = time.time()
            result.success = result.errors == 0
            return result

        bulk, bulk_failures = await self.build_bulk_map()
        result.errors += bulk_failures

        misses = [o for o in orders if o.reference not in bulk]
        fallback = await self._fallback(misses) if misses else {}
        logger.info(f"{len(orders) - len(misses)} bulk hit(s), {len(misses)} fallback lookup(s)")

        updates: List[StatusUpdate] = []
        for order in orders:
            found = bulk.get(order.reference) or fallback.get(order.reference)

            if isinstance(found, Exception):
                result.errors += 1
                result.details.append({"reference": order.reference, "status": ERROR, "error": str(found)})
                continue
            if found is None:
                result.not_found += 1
                result.details.append({
                    "reference": order.reference,
                    "status": NOT_FOUND,
                    "error": CARRIER_NOT_FOUND_MESSAGE,
                })
                continue

            canonical = self._map(found)
            if not is_transition_allowed(order.shipping_status, canonical):
                result.rejected += 1
                logger.warning(f"Ignoring {canonical} for {order.reference}: already {order.shipping_status}")
                continue

            backfill_tracking = found.tracking_number if not order.tracking_code else None
            needs_lifecycle = canonical == DELIVERED and order.status != LifecycleStatus.DELIVERED.value
            if canonical == order.shipping_status and not backfill_tracking and not needs_lifecycle:
                result.unchanged += 1
                continue

            updates.append(StatusUpdate(
                order_id=order.id,
                reference=order.reference,
                shipping_status=canonical,
                native_status=str(found.native_status) if found.native_status is not None else None,
                tracking_code=backfill_tracking,
                carrier_shipment_id=found.carrier_order_id,
                credential_id=found.credential_id,
            ))

        for start in range(0, len(updates), self.write_batch_size):
            batch = updates[start:start + self.write_batch_size]
            logger.info(f"Writing batch {start // self.write_batch_size + 1}: {len(batch)} update(s)")
            for update in batch:
                try:
                    outcome = await self.repository.apply_status_update(update)
                except Exception as e:
                    result.errors += 1
                    result.details.append({"reference": update.reference, "status": ERROR, "error": str(e)})
                    logger.error(f"Failed to update {update.reference}: {e}")
                    continue

                if outcome == UPDATED:
                    result.updated += 1
                    result.details.append({"reference": update.reference, "status": update.shipping_status})
                elif outcome == UNCHANGED:
                    result.unchanged += 1
                elif outcome == REJECTED:
                    result.rejected += 1

        result.completed_at = time.time()
        result.success = result.errors == 0 or result.updated > 0
        logger.info(
            f"Reconciliation done: {result.updated} updated, {result.unchanged} unchanged, "
            f"{result.not_found} not found, {result.rejected} rejected, {result.errors} error(s)"
        )
        return result
