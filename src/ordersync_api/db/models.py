"""SQLAlchemy models for the canonical order store."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Customer(Base):
    """Buyer, matched across orders by phone number."""

    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    wilaya: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    commune: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Order(Base):
    """
    Canonical order.

    The natural key is (source, store_identifier, source_native_id): native
    ids are only unique inside one store.
    """

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("source", "store_identifier", "source_native_id", name="uq_orders_natural_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Natural key
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    store_identifier: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    source_native_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    source_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    total: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Carrier side
    shipping_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    carrier_status_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    carrier_shipment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    carrier_credential_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tracking_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    carrier_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("customers.id"), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )


class OrderItem(Base):
    """Line item of an order."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    title: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    total_price: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")


class SourceConfig(Base):
    """Storefront credentials for one store, managed outside the engine."""

    __tablename__ = "source_configs"

    store_identifier: Mapped[str] = mapped_column(String(100), primary_key=True)
    store_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    api_token: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class WebhookEvent(Base):
    """Audit row for every carrier event received, applied or not."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
