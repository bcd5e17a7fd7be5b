from __future__ import annotations

from collections.abc import Sequence

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewise.src.api.database import async_session_factory
from pricewise.src.config import Settings, settings as default_settings
from pricewise.src.contracts.errors import StorageUnavailable
from pricewise.src.contracts.models import RefreshSummary
from pricewise.src.notifier import EmailNotifier, NotificationDispatcher, WebPushNotifier
from pricewise.src.products.repository import ProductRepository
from pricewise.src.refresh.orchestrator import RefreshOrchestrator
from pricewise.src.scraper.registry import AdapterRegistry
from pricewise.src.snapshots.store import SqlPriceStore

logger = structlog.get_logger(__name__)


def build_orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> RefreshOrchestrator:
    """Wire the production refresh pipeline against the given database."""
    return RefreshOrchestrator(
        store=SqlPriceStore(session_factory),
        adapters=AdapterRegistry(),
        dispatcher=NotificationDispatcher(
            session_factory=session_factory,
            email_notifier=EmailNotifier(settings),
            web_push_notifier=WebPushNotifier(settings),
        ),
        settings=settings,
    )


class RefreshScheduler:
    """Periodically refreshes every tracked product (active alert or favorite)."""

    def __init__(
        self,
        orchestrator: RefreshOrchestrator | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._session_factory = session_factory or async_session_factory
        self._orchestrator = orchestrator or build_orchestrator(
            self._session_factory, self._settings
        )
        self._scheduler = AsyncIOScheduler()

    @property
    def orchestrator(self) -> RefreshOrchestrator:
        return self._orchestrator

    def start(self) -> None:
        self._scheduler.add_job(
            self._run_cycle,
            trigger=IntervalTrigger(minutes=self._settings.refresh_interval_minutes),
            id="price_refresh",
            name="Refresh tracked product prices",
            replace_existing=True,
            max_instances=1,
            next_run_time=None,  # Don't run immediately; let first interval pass
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            interval_minutes=self._settings.refresh_interval_minutes,
        )

    def stop(self) -> None:
        self._scheduler.shutdown(wait=False)
        logger.info("scheduler_shutdown")

    async def trigger_now(
        self, product_ids: Sequence[str] | None = None
    ) -> RefreshSummary | None:
        """Run a refresh immediately, for all tracked products unless ids are given."""
        if product_ids is None:
            product_ids = await self._tracked_product_ids()
        if not product_ids:
            logger.info("no_tracked_products")
            return None
        return await self._orchestrator.refresh(product_ids)

    async def _tracked_product_ids(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                return await ProductRepository(session).get_tracked_ids()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to load tracked products: {exc}") from exc

    async def _run_cycle(self) -> None:
        logger.info("refresh_cycle_start")
        try:
            summary = await self.trigger_now()
        except StorageUnavailable as exc:
            logger.error("refresh_cycle_storage_unavailable", error=str(exc))
            return
        except Exception:
            logger.error("refresh_cycle_error", exc_info=True)
            return

        if summary is not None:
            logger.info(
                "refresh_cycle_complete",
                job_id=str(summary.job_id),
                succeeded=summary.products_succeeded,
                failed=summary.products_failed,
                notifications_sent=summary.notifications_sent,
            )
