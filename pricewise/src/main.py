from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pricewise.src.api.database import engine
from pricewise.src.api.errors import register_error_handlers
from pricewise.src.api.routes import limiter, router
from pricewise.src.config import settings
from pricewise.src.contracts.models import Base
from pricewise.src.scheduler.scheduler import RefreshScheduler

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
        logging.getLevelName(settings.log_level.upper()),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("starting_up", cors_origins=settings.cors_origin_list)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    # The HTTP trigger and the periodic job share one orchestrator
    scheduler = RefreshScheduler()
    scheduler.start()
    app.state.orchestrator = scheduler.orchestrator
    logger.info(
        "refresh_scheduler_started",
        interval_minutes=settings.refresh_interval_minutes,
        max_concurrent_fetches=settings.max_concurrent_fetches,
    )

    yield

    scheduler.stop()
    logger.info("refresh_scheduler_stopped")

    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="Pricewise API",
    description="Multi-store price tracking and price-drop alerts",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
