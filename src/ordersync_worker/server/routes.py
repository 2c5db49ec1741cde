"""Worker API routes."""

import base64
import json
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from ordersync_api.core.cache import ping
from ordersync_api.core.logger import setup_logger
from ordersync_worker.server.container import ServiceContainer

logger = setup_logger(__name__)
router = APIRouter()


def get_container(request: Request) -> ServiceContainer:
    """Services built by the composition root."""
    container = request.app.state.container
    if container is None:
        raise RuntimeError("Services not initialized")
    return container


def decode_webhook_body(body) -> dict:
    """
    Unwrap a webhook body.

    Carriers either post the event directly or wrap it as base64 JSON in
    `message.data`.
    """
    if isinstance(body, dict) and isinstance(body.get("message"), dict) and body["message"].get("data"):
        return json.loads(base64.b64decode(body["message"]["data"]).decode("utf-8"))
    return body


@router.post("/webhooks/{carrier}")
async def receive_carrier_webhook(
    carrier: str,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Receive a carrier status event.

    Expected payload:
    {
      "event": "OrderStatusChanged",
      "payload": {
        "external_order_id": "R1",
        "status": 41,
        "display_id_order": "TRK-1"
      }
    }

    Always answers 200 so the carrier does not retry; failures are recorded
    on the stored event.
    """
    try:
        event = decode_webhook_body(await request.json())
        logger.info(f"Received {carrier} webhook: {event.get('event') if isinstance(event, dict) else '?'}")

        result = await container.webhook_applier.apply_event(event, carrier=carrier)
        return {
            "success": result.success,
            "orderReference": result.order_reference,
            "message": result.message,
        }

    except Exception as e:
        logger.error(f"Error in webhook endpoint: {e}", exc_info=True)
        return {"success": False, "message": "Webhook received but could not be processed"}


@router.post("/api/webhooks/retry")
async def retry_webhook_events(
    limit: int = Query(100, ge=1, le=1000),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Replay stored status events that were not applied."""
    try:
        return {"success": True, "result": await container.webhook_applier.retry_failed_events(limit)}
    except Exception as e:
        logger.error(f"Error retrying webhook events: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)) -> dict:
    """Health check endpoint.

    Returns:
        {
            "status": "healthy|degraded",
            "service": "order-sync-worker",
            "database": "ok|error",
            "cache": "ok|error",
            "scheduler": "running|stopped"
        }
    """
    database_ok = await container.repository.health_check()
    cache_ok = await ping(container.cache)
    return {
        "status": "healthy" if database_ok and cache_ok else "degraded",
        "service": "order-sync-worker",
        "database": "ok" if database_ok else "error",
        "cache": "ok" if cache_ok else "error",
        "scheduler": "running" if container.scheduler.is_running else "stopped",
    }


@router.get("/api/scheduler/status")
async def get_scheduler_status(container: ServiceContainer = Depends(get_container)) -> dict:
    """Per-job state, last run record, history and next trigger times."""
    try:
        return {"success": True, "status": await container.scheduler.get_status()}
    except Exception as e:
        logger.error(f"Error getting scheduler status: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@router.post("/api/sync/ingestion")
async def trigger_ingestion(
    full: bool = Query(False, description="Rescan every page instead of the cursor window"),
    store: Optional[str] = Query(None, description="Only this store identifier"),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Run ingestion now and return the job record."""
    try:
        record = await container.scheduler.trigger_ingestion(full=full, store_identifier=store)
        return {"success": record.last_status == "success", "result": asdict(record)}
    except Exception as e:
        logger.error(f"Error in manual ingestion: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@router.post("/api/sync/reconciliation")
async def trigger_reconciliation(
    references: Optional[List[str]] = Body(None, embed=True),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Run reconciliation now, for all orders due or only `references`."""
    try:
        record = await container.scheduler.trigger_reconciliation(references=references)
        return {"success": record.last_status == "success", "result": asdict(record)}
    except Exception as e:
        logger.error(f"Error in manual reconciliation: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


@router.get("/api/carriers")
async def carrier_credentials(
    test: bool = Query(False, description="Also test every credential"),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Configured carrier credentials with usage counters."""
    try:
        result = {"success": True, "credentials": await container.router.get_stats()}
        if test:
            result["connections"] = await container.router.test_connections()
        return result
    except Exception as e:
        logger.error(f"Error reading carrier credentials: {e}", exc_info=True)
        return {"success": False, "error": str(e)}
