"""Turns raw source orders into canonical Order rows, once per natural key."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ordersync_api.config.constants import (
    DEFAULT_LIFECYCLE_STATUS,
    SOURCE_NAME,
    SOURCE_STATUS_MAPPING,
)
from ordersync_api.core.logger import setup_logger
from ordersync_api.models.source import SourceOrder

logger = setup_logger(__name__)


class MaterializeOutcome(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    ERROR = "error"


def map_lifecycle_status(native_state: Optional[str]) -> str:
    """Map a source native state to the canonical lifecycle status."""
    return SOURCE_STATUS_MAPPING.get((native_state or "").strip(), DEFAULT_LIFECYCLE_STATUS)


def parse_order_date(raw: Optional[str]) -> datetime:
    """Parse a source timestamp; naive values are taken as UTC."""
    if raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
        except ValueError:
            logger.debug(f"Unparseable order date {raw!r}, using now")
    return datetime.now(timezone.utc)


class Materializer:
    """
    Dedup & materialization of source orders.

    The lookup key is (source, store, native id), never the native id alone:
    different stores reuse the same numeric ids.
    """

    def __init__(self, repository, source: str = SOURCE_NAME):
        self.repository = repository
        self.source = source

    def build_reference(self, order: SourceOrder, store_identifier: str) -> str:
        return order.reference or f"{store_identifier}-{order.id}"

    async def materialize(self, order: SourceOrder, store_identifier: str) -> MaterializeOutcome:
        """
        Create the canonical order unless (store, native id) already exists.

        Existing orders are never overwritten.
        """
        try:
            existing = await self.repository.find_by_natural_key(self.source, store_identifier, order.id)
            if existing is not None:
                logger.debug(f"Order {store_identifier}/{order.id} already ingested")
                return MaterializeOutcome.SKIPPED

            items = [
                {
                    "product_id": item.product_id,
                    "sku": item.sku,
                    "title": item.title or "",
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total_price": (
                        item.total_price if item.total_price is not None
                        else item.unit_price * item.quantity
                    ),
                }
                for item in order.items
            ]
            total = order.total if order.total is not None else sum(i["total_price"] for i in items)

            customer = None
            if order.telephone:
                customer = {
                    "phone": order.telephone.strip(),
                    "full_name": order.full_name or "",
                    "wilaya": order.wilaya,
                    "commune": order.commune,
                    "address": order.address,
                }

            await self.repository.create_order(
                order_data={
                    "source": self.source,
                    "store_identifier": store_identifier,
                    "source_native_id": order.id,
                    "reference": self.build_reference(order, store_identifier),
                    "status": map_lifecycle_status(order.order_state_name),
                    "source_status": order.order_state_name,
                    "total": total,
                    "order_date": parse_order_date(order.created_at),
                },
                items_data=items,
                customer_data=customer,
            )
            logger.info(
                f"Created order {store_identifier}/{order.id} with {len(items)} item(s)",
                extra={"store": store_identifier},
            )
            return MaterializeOutcome.CREATED

        except IntegrityError as e:
            # Lost a race on the natural key, or the reference belongs to another order
            if await self.repository.find_by_natural_key(self.source, store_identifier, order.id):
                return MaterializeOutcome.SKIPPED
            logger.error(f"Cannot create order {store_identifier}/{order.id}: {e.orig}")
            return MaterializeOutcome.ERROR
        except Exception as e:
            logger.error(f"Error materializing order {store_identifier}/{order.id}: {e}", exc_info=True)
            return MaterializeOutcome.ERROR
