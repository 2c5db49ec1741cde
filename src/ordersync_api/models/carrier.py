"""Normalized carrier shipment data."""

from typing import Optional, Union

from pydantic import BaseModel, Field


class CarrierShipment(BaseModel):
    """One shipment as seen by a carrier, whatever the carrier variant."""

    reference: str = Field(..., description="Our order reference (carrier's external order id)")
    native_status: Optional[Union[int, str]] = Field(None, description="Carrier status code or label")
    tracking_number: Optional[str] = None
    carrier_order_id: Optional[str] = None
    credential_id: Optional[str] = None
    last_update: Optional[str] = None

    class Config:
        extra = "allow"
