"""
Canonical order vocabulary.

Lifecycle statuses describe the order as a whole; shipping statuses are the
carrier-agnostic labels every carrier provider maps its native codes into.
"""

from enum import Enum
from typing import Optional


class LifecycleStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


# Canonical shipping statuses
CREATED = "created"
PICKUP_REQUESTED = "pickup_requested"
IN_PROGRESS = "in_progress"
AWAITING_TRANSIT = "awaiting_transit"
IN_TRANSIT = "in_transit"
IN_TRANSIT_RETURN = "in_transit_return"
ON_HOLD = "on_hold"
OUT_OF_STOCK = "out_of_stock"
READY_TO_SHIP = "ready_to_ship"
ASSIGNED = "assigned"
SHIPPED = "shipped"
ALERTED = "alerted"
DELIVERED = "delivered"
POSTPONED = "postponed"
CANCELLED = "cancelled"
READY_TO_RETURN = "ready_to_return"
RETURNED_TO_STORE = "returned_to_store"
NOT_RECEIVED = "not_received"
OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERY_FAILED = "delivery_failed"
RETURNED = "returned"

TERMINAL_SHIPPING_STATUSES = frozenset({DELIVERED, CANCELLED})


def unknown_status(code) -> str:
    """Label for a carrier code missing from the mapping table."""
    return f"UNKNOWN({code})"


def is_transition_allowed(current: Optional[str], new: str) -> bool:
    """
    Check whether a shipping status may move from `current` to `new`.

    Terminal statuses are sticky: a delivered or cancelled order never moves
    to another label, whatever a carrier reports later.
    """
    if current is None or current == new:
        return True
    return current not in TERMINAL_SHIPPING_STATUSES
