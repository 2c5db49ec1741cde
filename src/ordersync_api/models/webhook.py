"""Pydantic models for carrier webhook events."""

from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

ORDER_STATUS_CHANGED = "OrderStatusChanged"


class StatusChangePayload(BaseModel):
    """Payload of an OrderStatusChanged event."""

    external_order_id: str = Field(..., description="Our order reference")
    status: Union[int, str] = Field(..., description="Carrier native status code")
    display_id_order: Optional[str] = Field(None, description="Carrier tracking id")

    class Config:
        extra = "allow"

    @field_validator("external_order_id", "display_id_order", mode="before")
    @classmethod
    def coerce_identifiers(cls, value):
        # Carriers send numeric ids as JSON numbers
        return str(value) if isinstance(value, int) else value


class CarrierWebhookEvent(BaseModel):
    """Event pushed by a carrier."""

    event: str = Field(..., description="Event type")
    payload: Optional[dict] = Field(None, description="Event-specific data")

    class Config:
        extra = "allow"

    def status_change(self) -> StatusChangePayload:
        """
        Parse the payload of an OrderStatusChanged event.

        Raises:
            pydantic.ValidationError: payload missing or incomplete
        """
        return StatusChangePayload.model_validate(self.payload or {})
