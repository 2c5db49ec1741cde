"""Worker FastAPI application (composition root)."""

from typing import Optional

from fastapi import FastAPI

from ordersync_api.config.settings import Settings
from ordersync_api.core.logger import setup_logger
from ordersync_api.core.monitoring import init_monitoring
from ordersync_worker.server.container import ServiceContainer, build_container
from ordersync_worker.server.routes import router

logger = setup_logger(__name__)


def create_app(settings: Optional[Settings] = None, container: Optional[ServiceContainer] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to build services from (defaults to environment)
        container: Prebuilt services; when given, startup builds nothing

    Returns:
        Configured FastAPI app instance
    """
    if settings is None:
        from ordersync_api.config.settings import settings as env_settings
        settings = env_settings

    app = FastAPI(
        title="Order Sync Worker",
        description="Ingests storefront orders and reconciles carrier shipping status",
        version="1.0.0",
    )
    app.state.container = container

    init_monitoring(settings.glitchtip_dsn, settings.environment)

    @app.on_event("startup")
    async def startup():
        """Build services once and start the scheduler."""
        if app.state.container is not None:
            return
        try:
            logger.info("Starting Order Sync Worker...")
            app.state.container = await build_container(settings)
            if settings.scheduler_enabled:
                await app.state.container.scheduler.start()
            else:
                logger.info("Scheduler disabled, manual triggers only")
            logger.info("Order Sync Worker started")
        except Exception as e:
            logger.error(f"Failed to start worker: {e}", exc_info=True)
            raise

    @app.on_event("shutdown")
    async def shutdown():
        """Stop the scheduler and release connections."""
        logger.info("Shutting down Order Sync Worker...")
        if app.state.container is not None:
            await app.state.container.close()
        logger.info("Shutdown completed")

    app.include_router(router)

    return app
