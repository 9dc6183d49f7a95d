"""FastAPI host for the monitoring engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from statuswatch.api.monitoring_routes import monitoring_router
from statuswatch.config import settings
from statuswatch.health.context import MonitorHost, build_context, enqueue_on_monitoring_change
from statuswatch.health.scheduler import MonitoringScheduler
from statuswatch.targets.registry import TargetRegistry
from statuswatch.targets.store import SQLiteTargetStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize shared resources on startup."""
    host = MonitorHost()
    app.state.monitor_host = host

    # Record store
    store = SQLiteTargetStore(settings.db_path)
    try:
        synced = TargetRegistry(settings.targets_file).sync(store)
        logger.info("Target registry synced: %d targets", synced)
    except Exception:
        logger.exception("Failed to sync targets file, continuing with stored targets")

    ctx = build_context(store, max_concurrency=settings.max_concurrent_checks)
    store.add_change_hook(enqueue_on_monitoring_change(ctx.queue))
    app.state.monitor = ctx

    # Scheduler. We are inside startup: hand over the context we just built,
    # host.acquire() would wait for this very function to return.
    scheduler = MonitoringScheduler(host.acquire)
    app.state.scheduler = scheduler
    if settings.enable_auto_monitoring:
        try:
            await scheduler.start(context=ctx)
        except Exception:
            logger.exception("Monitoring scheduler failed to start")
    else:
        logger.info("Automatic monitoring disabled by ENABLE_AUTO_MONITORING")

    host.publish(ctx)

    yield

    await scheduler.stop()
    store.close()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    app = FastAPI(title="statuswatch", version="0.1.0", lifespan=lifespan)
    app.include_router(monitoring_router, prefix="/api")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
