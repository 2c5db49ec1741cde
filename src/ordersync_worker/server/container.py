"""Service container: every long-lived object, built once per process."""

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from ordersync_api.api.carriers.factory import create_provider
from ordersync_api.api.source_client import SourceClient
from ordersync_api.config.constants import HTTP_TIMEOUT_SECONDS
from ordersync_api.config.credentials import load_carrier_credentials
from ordersync_api.config.settings import Settings
from ordersync_api.core.cache import create_redis
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.rate_limiter import RateLimiter
from ordersync_api.db.base import get_engine, get_session_factory, init_db
from ordersync_api.db.repository import OrderRepository
from ordersync_worker.services.credential_router import CredentialRouter
from ordersync_worker.services.cursor_tracker import CursorTracker
from ordersync_worker.services.ingestion import IngestionService
from ordersync_worker.services.materializer import Materializer
from ordersync_worker.services.reconciler import Reconciler
from ordersync_worker.services.scheduler import SyncScheduler
from ordersync_worker.services.webhook_applier import WebhookStatusApplier

logger = setup_logger(__name__)


@dataclass
class ServiceContainer:
    """Handles passed to routes through app.state."""
    repository: OrderRepository
    router: CredentialRouter
    ingestion: IngestionService
    reconciler: Reconciler
    webhook_applier: WebhookStatusApplier
    scheduler: SyncScheduler
    cache: Any
    engine: Any = None
    http_client: Optional[httpx.AsyncClient] = None

    async def close(self):
        await self.scheduler.stop()
        await self.router.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.cache is not None:
            await self.cache.aclose()
        if self.engine is not None:
            await self.engine.dispose()


async def build_container(settings: Settings, environ: Optional[Mapping[str, str]] = None) -> ServiceContainer:
    """
    Wire the engine from settings.

    Args:
        settings: Application settings
        environ: Source of CARRIER_API_KEY_* variables (defaults to os.environ)
    """
    engine = get_engine(settings.database_url)
    await init_db(engine)
    repository = OrderRepository(get_session_factory(engine))

    cache = create_redis(settings.redis_host, settings.redis_port, settings.redis_db)
    rate_limiter = RateLimiter(cache, min_delay=settings.source_min_delay_seconds)
    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    retry_options = {
        "max_retries": settings.max_rate_limit_retries,
        "backoff_seconds": settings.rate_limit_backoff_seconds,
    }

    def source_client_factory(config) -> SourceClient:
        return SourceClient(
            store_identifier=config.store_identifier,
            base_url=config.base_url,
            api_token=config.api_token,
            rate_limiter=rate_limiter,
            page_size=settings.source_page_size,
            min_delay=settings.source_min_delay_seconds,
            cooldown_seconds=settings.rate_limit_cooldown_seconds,
            http_client=http_client,
            **retry_options,
        )

    def provider_factory(credential):
        return create_provider(
            credential,
            rate_limiter,
            min_delay=settings.carrier_min_delay_seconds,
            fan_out=settings.carrier_bulk_fan_out,
            http_client=http_client,
            **retry_options,
        )

    router = CredentialRouter(load_carrier_credentials(environ), provider_factory, cache=cache)

    ingestion = IngestionService(
        repository=repository,
        cursor_tracker=CursorTracker(cache),
        materializer=Materializer(repository),
        client_factory=source_client_factory,
        window_pages=settings.rescan_window_pages,
        max_empty_pages=settings.max_empty_pages,
        store_delay_seconds=settings.store_delay_seconds,
    )
    reconciler = Reconciler(
        repository,
        router,
        bulk_max_results=settings.carrier_bulk_max_results,
        write_batch_size=settings.reconcile_write_batch_size,
    )
    scheduler = SyncScheduler(
        ingestion_service=ingestion,
        reconciler=reconciler,
        repository=repository,
        rate_limiter=rate_limiter,
        cache=cache,
        ingestion_hours=settings.ingestion_trigger_hours,
        reconciliation_hours=settings.reconciliation_trigger_hours,
        run_timeout=settings.run_timeout_seconds,
        timezone_name=settings.scheduler_timezone,
    )

    return ServiceContainer(
        repository=repository,
        router=router,
        ingestion=ingestion,
        reconciler=reconciler,
        webhook_applier=WebhookStatusApplier(repository),
        scheduler=scheduler,
        cache=cache,
        engine=engine,
        http_client=http_client,
    )
