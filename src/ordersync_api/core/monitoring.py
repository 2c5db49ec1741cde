"""
GlitchTip error reporting for sync runs.

GlitchTip speaks the Sentry protocol, so the stock sentry_sdk client is used.
Without a DSN the SDK stays uninitialized and every helper is a no-op.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from ordersync_api.core.logger import setup_logger

logger = setup_logger(__name__)


def init_monitoring(dsn: Optional[str], environment: str) -> bool:
    """
    Initialize GlitchTip reporting.

    Returns:
        True if a DSN was given and the SDK accepted it
    """
    if not dsn:
        logger.info("GlitchTip DSN not set, error reporting disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                # Breadcrumbs from INFO, events from ERROR
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.0,
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"Failed to initialize GlitchTip: {e}")
        return False

    logger.info(f"GlitchTip error monitoring initialized ({environment})")
    return True


def set_sync_context(job: str, store: Optional[str] = None, credential: Optional[str] = None, **extra_tags) -> None:
    """
    Tag subsequent events with the sync run they belong to.

    Args:
        job: ingestion, reconciliation or webhook
        store: Store identifier being processed
        credential: Carrier credential id in use
        **extra_tags: Any other tag (trigger, scope, carrier...)
    """
    tags = {"sync.job": job, "sync.store": store, "sync.credential": credential}
    tags.update(extra_tags)
    try:
        for key, value in tags.items():
            if value is not None:
                sentry_sdk.set_tag(key, value)
        sentry_sdk.set_context("sync", {k.replace("sync.", ""): v for k, v in tags.items()})
    except Exception as e:
        logger.warning(f"Failed to set sync context: {e}")


def capture_exception(error: Exception, context: Optional[Dict[str, Any]] = None, level: str = "error") -> None:
    """Report an exception with optional extra context."""
    try:
        with sentry_sdk.new_scope() as scope:
            scope.level = level
            if context:
                scope.set_context("details", context)
            sentry_sdk.capture_exception(error)
    except Exception as e:
        logger.warning(f"Failed to capture exception in GlitchTip: {e}")
