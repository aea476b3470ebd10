# mayday/transport/http_app.py
"""
Process host for the dispatch core.

The lifespan owns the database pool and the background workers; the
only HTTP surface is /health and /metrics. Run with:

    uvicorn mayday.transport.http_app:app
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from mayday.bootstrap import build_services
from mayday.config import settings
from mayday.infra.db_async import close_pool, init_pool
from mayday.infra.http_client import close_push_session
from mayday.infra.logging_config import get_logger, setup_logging
from mayday.infra.metrics import get_metrics_collector
from mayday.infra.migrations_async import apply_migrations
from mayday.transport.security import require_metrics_auth

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

    await init_pool()
    logger.info("Database pool initialized")

    if settings.apply_migrations_on_startup:
        result = await apply_migrations()
        logger.info(f"Migrations applied on startup: {result['applied']}")

    services = build_services(settings)
    fastapi_app.state.services = services

    # Workers only in "all" or "worker" mode to prevent duplicate polling
    started = []
    if settings.run_mode in ("all", "worker"):
        if settings.retry_worker_enabled:
            await services.retry_worker.start()
            started.append(services.retry_worker)
        else:
            logger.info("Notification retry worker skipped (retry_worker_enabled=false)")

        if settings.expiry_sweeper_enabled:
            await services.expiry_sweeper.start()
            started.append(services.expiry_sweeper)
        else:
            logger.info("Dispatch expiry sweeper skipped (expiry_sweeper_enabled=false)")
    else:
        logger.info(f"Background workers skipped (run_mode={settings.run_mode})")

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    for worker in reversed(started):
        await worker.stop()

    await close_push_session()
    await close_pool()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Pet Mayday dispatch",
    description="Law-triggered enforcement dispatch and responder notification",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)


@app.get("/health")
def health():
    """Basic health check - PUBLIC endpoint. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """
    Metrics endpoint - INTERNAL/METRICS only.

    Access: Internal network OR METRICS_TOKEN
    """
    if not settings.enable_metrics:
        return {"enabled": False}
    return get_metrics_collector().get_metrics()
