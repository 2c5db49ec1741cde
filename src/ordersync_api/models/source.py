"""Pydantic models for storefront (source) orders."""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class SourceOrderItem(BaseModel):
    """Line item of a source order."""

    product_id: Optional[str] = None
    title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 1
    unit_price: float = 0.0
    total_price: Optional[float] = None

    class Config:
        extra = "allow"

    @field_validator("product_id", "sku", mode="before")
    @classmethod
    def coerce_ids(cls, value):
        return _to_str(value)


class SourceOrder(BaseModel):
    """Order as returned by the storefront `/orders` endpoint."""

    id: int = Field(..., description="Native id, unique per store only")
    reference: Optional[str] = None
    order_state_name: Optional[str] = Field(None, description="Native lifecycle state")
    full_name: Optional[str] = None
    telephone: Optional[str] = None
    wilaya: Optional[str] = None
    commune: Optional[str] = None
    address: Optional[str] = None
    items: List[SourceOrderItem] = Field(default_factory=list)
    total: Optional[float] = None
    created_at: Optional[str] = None

    class Config:
        extra = "allow"

    @field_validator("reference", "telephone", "created_at", mode="before")
    @classmethod
    def coerce_strings(cls, value):
        return _to_str(value)
