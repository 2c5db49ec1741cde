"""
Webhook Status Applier.

Applies carrier-pushed status events right away, outside the polling cycle,
with the same write rule as the reconciler. Every event is recorded.
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from ordersync_api.api.carriers.factory import CarrierSlug, provider_class
from ordersync_api.core.errors import ConfigurationError
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.monitoring import capture_exception, set_sync_context
from ordersync_api.db.repository import StatusUpdate
from ordersync_api.models.webhook import ORDER_STATUS_CHANGED, CarrierWebhookEvent

logger = setup_logger(__name__)


@dataclass
class ApplyResult:
    """Outcome of one webhook event."""
    success: bool
    order_reference: Optional[str] = None
    shipping_status: Optional[str] = None
    outcome: Optional[str] = None
    message: str = ""


class WebhookStatusApplier:
    """Maps and applies OrderStatusChanged events."""

    def __init__(self, repository):
        self.repository = repository

    async def _record_unapplied(self, carrier: str, event_type: str, event: dict, error: str,
                                reference: Optional[str] = None, event_id: Optional[int] = None,
                                processed: bool = False) -> None:
        """Store an event that was not applied; processed=True keeps it out of replays."""
        if event_id is not None:
            await self.repository.mark_event_processed(event_id, error=error, processed=processed)
        else:
            await self.repository.record_webhook_event(
                source=carrier,
                event_type=event_type,
                payload=event,
                reference=reference,
                processed=processed,
                error=error,
            )

    async def apply_event(self, event: dict, carrier: str = CarrierSlug.MAYSTRO.value,
                          event_id: Optional[int] = None) -> ApplyResult:
        """
        Apply one pushed event.

        Args:
            event: Raw event body ({event, payload: {external_order_id, status, display_id_order}})
            carrier: Carrier slug the event came from
            event_id: Stored event being replayed, if any

        Returns:
            ApplyResult; unsupported or invalid events give success=False
        """
        event_type = str(event.get("event") or "unknown") if isinstance(event, dict) else "unknown"
        reference = None
        set_sync_context("webhook", carrier=carrier, event_type=event_type)

        try:
            parsed = CarrierWebhookEvent.model_validate(event)
            if parsed.event != ORDER_STATUS_CHANGED:
                logger.info(f"Ignoring unsupported webhook event: {parsed.event}")
                await self._record_unapplied(carrier, event_type, event, "Unsupported event type",
                                             event_id=event_id, processed=True)
                return ApplyResult(success=False, message=f"Unsupported event type: {parsed.event}")

            change = parsed.status_change()
            reference = change.external_order_id
            canonical = provider_class(carrier).map_status(change.status)

            outcome, _ = await self.repository.apply_webhook_status(
                reference=reference,
                update=StatusUpdate(
                    order_id=0,
                    reference=reference,
                    shipping_status=canonical,
                    native_status=str(change.status),
                    tracking_code=change.display_id_order,
                ),
                source=carrier,
                event_type=event_type,
                payload=event,
                event_id=event_id,
            )

            if outcome is None:
                logger.warning(f"Order not found for reference: {reference}", extra={"reference": reference})
                return ApplyResult(success=False, order_reference=reference,
                                   message=f"Order not found for reference: {reference}")

            logger.info(
                f"Webhook {outcome}: {reference} shipping status {canonical}",
                extra={"reference": reference},
            )
            return ApplyResult(
                success=True,
                order_reference=reference,
                shipping_status=canonical,
                outcome=outcome,
                message=f"Order {reference} shipping status {outcome}: {canonical}",
            )

        except (ValidationError, ConfigurationError) as e:
            logger.warning(f"Invalid webhook event from {carrier}: {e}")
            await self._record_unapplied(carrier, event_type, event if isinstance(event, dict) else {"raw": event},
                                         f"Invalid event: {e}", reference=reference, event_id=event_id,
                                         processed=True)
            return ApplyResult(success=False, order_reference=reference, message="Invalid event payload")

        except Exception as e:
            logger.error(f"Error applying webhook event: {e}", exc_info=True)
            capture_exception(e, context={"carrier": carrier, "reference": reference})
            try:
                await self._record_unapplied(carrier, event_type, event if isinstance(event, dict) else {"raw": event},
                                             f"Processing error: {e}", reference=reference, event_id=event_id)
            except Exception as record_error:
                logger.error(f"Failed to record webhook event: {record_error}")
            return ApplyResult(success=False, order_reference=reference, message=str(e))

    async def retry_failed_events(self, limit: int = 100) -> dict:
        """Replay recorded status events that could not be applied (e.g. order not ingested yet)."""
        events = await self.repository.list_unprocessed_events(limit, event_type=ORDER_STATUS_CHANGED)
        retried = succeeded = 0
        for stored in events:
            retried += 1
            result = await self.apply_event(stored.payload, carrier=stored.source, event_id=stored.id)
            if result.success:
                succeeded += 1
        logger.info(f"Retried {retried} webhook event(s), {succeeded} applied")
        return {"retried": retried, "succeeded": succeeded, "failed": retried - succeeded}
