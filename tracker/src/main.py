from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI

from tracker.src.api.database import async_session_factory, engine
from tracker.src.api.routes import router
from tracker.src.config import settings
from tracker.src.contracts.models import Base
from tracker.src.fetcher.registry import FetcherRegistry
from tracker.src.tracking.service import TrackingService

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.get_config().get("min_level", 0),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    fetchers = FetcherRegistry.from_endpoints(
        settings.retailer_endpoints,
        timeout=settings.fetch_timeout_seconds,
    )
    tracking = TrackingService(settings, fetchers, session_factory=async_session_factory)
    app.state.tracking = tracking
    await tracking.start()
    logger.info("tracking_started", sources=fetchers.sources())

    yield

    # Shutdown
    await tracking.stop()
    logger.info("tracking_stopped")

    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="Product Tracker API",
    description="Price and availability change detection with deduplicated alerts",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(router)
