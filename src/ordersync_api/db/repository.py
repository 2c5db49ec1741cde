"""Repository for the canonical order store."""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy import update as sql_update

from ordersync_api.core.logger import setup_logger
from ordersync_api.core.status import (
    TERMINAL_SHIPPING_STATUSES,
    DELIVERED,
    LifecycleStatus,
    is_transition_allowed,
)

from .models import Customer, Order, OrderItem, SourceConfig, WebhookEvent, utcnow

logger = setup_logger(__name__)

# Outcomes of applying a carrier status to an order
UPDATED = "updated"
UNCHANGED = "unchanged"
REJECTED = "rejected"


@dataclass
class StatusUpdate:
    """Carrier-side facts to merge into one order."""
    order_id: int
    reference: str
    shipping_status: str
    native_status: Optional[str] = None
    tracking_code: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    credential_id: Optional[str] = None


def apply_carrier_status(order: Order, update: StatusUpdate) -> str:
    """
    Merge a carrier status into an order in place.

    Terminal shipping statuses never move, and a delivered shipment forces
    the order lifecycle to DELIVERED.

    Returns:
        UPDATED, UNCHANGED or REJECTED
    """
    if not is_transition_allowed(order.shipping_status, update.shipping_status):
        logger.warning(
            f"Rejected status regression for {order.reference}: "
            f"{order.shipping_status} -> {update.shipping_status}",
            extra={"reference": order.reference},
        )
        return REJECTED

    changed = False
    if order.shipping_status != update.shipping_status:
        order.shipping_status = update.shipping_status
        changed = True
    if update.native_status is not None and order.carrier_status_code != str(update.native_status):
        order.carrier_status_code = str(update.native_status)
        changed = True
    if update.tracking_code and order.tracking_code != update.tracking_code:
        order.tracking_code = update.tracking_code
        changed = True
    if update.carrier_shipment_id and order.carrier_shipment_id != update.carrier_shipment_id:
        order.carrier_shipment_id = update.carrier_shipment_id
        changed = True
    if update.credential_id and order.carrier_credential_id != update.credential_id:
        order.carrier_credential_id = update.credential_id

    if update.shipping_status == DELIVERED and order.status != LifecycleStatus.DELIVERED.value:
        order.status = LifecycleStatus.DELIVERED.value
        changed = True

    if changed:
        order.carrier_updated_at = utcnow()
        return UPDATED
    return UNCHANGED


class OrderRepository:
    """
    Data access layer for orders, customers, sources and webhook events.

    Every write method runs in its own session and commits on its own, so a
    failure only loses the row being written.
    """

    def __init__(self, session_factory):
        """Initialize repository with an async session factory."""
        self.session_factory = session_factory

    async def health_check(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(select(1))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def list_active_sources(self) -> List[SourceConfig]:
        """Active stores in deterministic (store identifier) order."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SourceConfig)
                .where(SourceConfig.is_active.is_(True))
                .order_by(SourceConfig.store_identifier)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    async def find_by_natural_key(self, source: str, store_identifier: str, native_id: int) -> Optional[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.source == source,
                    Order.store_identifier == store_identifier,
                    Order.source_native_id == native_id,
                )
            )
            return result.scalar_one_or_none()

    async def reference_exists(self, reference: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.id).where(Order.reference == reference))
            return result.first() is not None

    async def max_native_id(self, source: str, store_identifier: str) -> Optional[int]:
        """Highest ingested native id for a store, None if nothing was ingested."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(Order.source_native_id)).where(
                    Order.source == source,
                    Order.store_identifier == store_identifier,
                )
            )
            return result.scalar_one_or_none()

    async def create_order(self, order_data: dict, items_data: List[dict], customer_data: Optional[dict]) -> Order:
        """
        Insert an order with its customer and line items in one transaction.

        The customer is matched by phone (created if missing) and its order
        count incremented.

        Args:
            order_data: Order column values
            items_data: OrderItem column values per line
            customer_data: Customer column values (phone required), or None

        Raises:
            sqlalchemy.exc.IntegrityError: natural key or reference already taken
        """
        async with self.session_factory() as session:
            async with session.begin():
                customer_id = None
                if customer_data and customer_data.get("phone"):
                    result = await session.execute(
                        select(Customer).where(Customer.phone == customer_data["phone"])
                    )
                    customer = result.scalar_one_or_none()
                    if customer is None:
                        customer = Customer(**customer_data, order_count=0)
                        session.add(customer)
                        await session.flush()
                    customer.order_count += 1
                    customer_id = customer.id

                order = Order(**order_data, customer_id=customer_id)
                order.items = [OrderItem(**item) for item in items_data]
                session.add(order)

            return order

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def orders_due_for_refresh(self, limit: int) -> List[Order]:
        """Newest orders whose shipment has not reached a terminal status."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order)
                .where(
                    or_(
                        Order.shipping_status.is_(None),
                        Order.shipping_status.notin_(sorted(TERMINAL_SHIPPING_STATUSES)),
                    ),
                    Order.status.notin_([
                        LifecycleStatus.DELIVERED.value,
                        LifecycleStatus.CANCELLED.value,
                    ]),
                )
                .order_by(Order.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_by_references(self, references: Iterable[str]) -> List[Order]:
        refs = list(references)
        if not refs:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.reference.in_(refs)).order_by(Order.id.desc())
            )
            return list(result.scalars().all())

    async def apply_status_update(self, update: StatusUpdate) -> str:
        """Apply one carrier status to one order and commit."""
        async with self.session_factory() as session:
            async with session.begin():
                order = await session.get(Order, update.order_id)
                if order is None:
                    raise LookupError(f"Order {update.order_id} no longer exists")
                return apply_carrier_status(order, update)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def apply_webhook_status(
        self,
        reference: str,
        update: StatusUpdate,
        source: str,
        event_type: str,
        payload: dict,
        event_id: Optional[int] = None,
    ) -> Tuple[Optional[str], Optional[int]]:
        """
        Apply a pushed status and record the event in the same transaction.

        When `event_id` is given (replay of a stored event) that row is
        updated instead of adding a new one.

        Returns:
            (outcome, event id); outcome is None when no order has `reference`
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(select(Order).where(Order.reference == reference))
                order = result.scalar_one_or_none()

                event = await session.get(WebhookEvent, event_id) if event_id else None
                if event is None:
                    event = WebhookEvent(
                        source=source,
                        event_type=event_type,
                        reference=reference,
                        payload=payload,
                    )
                    session.add(event)
                if order is None:
                    event.processed = False
                    event.error = f"Order not found for reference: {reference}"
                    outcome = None
                else:
                    update.order_id = order.id
                    outcome = apply_carrier_status(order, update)
                    event.order_id = order.id
                    event.processed = True
                    event.error = None
                    if outcome == REJECTED:
                        event.error = f"Transition rejected: {order.shipping_status} -> {update.shipping_status}"
                await session.flush()
                return outcome, event.id

    async def record_webhook_event(
        self,
        source: str,
        event_type: str,
        payload: dict,
        reference: Optional[str] = None,
        processed: bool = False,
        error: Optional[str] = None,
    ) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                event = WebhookEvent(
                    source=source,
                    event_type=event_type,
                    reference=reference,
                    payload=payload,
                    processed=processed,
                    error=error,
                )
                session.add(event)
                await session.flush()
                return event.id

    async def list_unprocessed_events(self, limit: int = 100, event_type: Optional[str] = None) -> List[WebhookEvent]:
        """Oldest unprocessed events first, optionally of one event type only."""
        query = select(WebhookEvent).where(WebhookEvent.processed.is_(False))
        if event_type is not None:
            query = query.where(WebhookEvent.event_type == event_type)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(WebhookEvent.id).limit(limit))
            return list(result.scalars().all())

    async def mark_event_processed(self, event_id: int, error: Optional[str] = None,
                                   processed: Optional[bool] = None) -> None:
        if processed is None:
            processed = error is None
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    sql_update(WebhookEvent)
                    .where(WebhookEvent.id == event_id)
                    .values(processed=processed, error=error)
                )
