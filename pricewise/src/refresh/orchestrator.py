from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from pricewise.src.config import Settings, settings as default_settings
from pricewise.src.contracts.errors import (
    AdapterUnavailable,
    DispatchFailed,
    InvalidRefreshRequest,
    StorageUnavailable,
    StorageWriteFailed,
)
from pricewise.src.contracts.interfaces import (
    IAlertMatcher,
    IChangeDetector,
    INotificationDispatcher,
    IPriceStore,
    IStoreAdapter,
)
from pricewise.src.contracts.models import (
    ChangeClassification,
    ChangeEvent,
    JobState,
    NotificationIntent,
    PriceQuote,
    ProductDescriptor,
    ProductOutcome,
    ProductResult,
    RefreshSummary,
    StoreRead,
)
from pricewise.src.differ.differ import ChangeDetector
from pricewise.src.matcher.matcher import AlertMatcher
from pricewise.src.scraper.registry import AdapterRegistry

logger = structlog.get_logger(__name__)

_MAX_PRODUCT_ID_LENGTH = 100


def _validate_product_ids(product_ids: object) -> list[str]:
    """Return the ids de-duplicated in request order, or raise InvalidRefreshRequest."""
    if isinstance(product_ids, (str, bytes)) or not isinstance(product_ids, Sequence):
        raise InvalidRefreshRequest("product_ids must be a list of product ids")
    if not product_ids:
        raise InvalidRefreshRequest("product_ids must not be empty")

    ids: list[str] = []
    for raw in product_ids:
        if not isinstance(raw, str) or not raw.strip():
            raise InvalidRefreshRequest(f"Invalid product id: {raw!r}")
        product_id = raw.strip()
        if len(product_id) > _MAX_PRODUCT_ID_LENGTH:
            raise InvalidRefreshRequest(f"Product id too long: {product_id[:20]}...")
        if product_id not in ids:
            ids.append(product_id)
    return ids


def _cheapest_per_store(quotes: Sequence[PriceQuote]) -> list[PriceQuote]:
    """One quote per store per refresh: its cheapest listing.

    Stores keep the order they first appear in; equal prices keep the earlier
    listing. Writing every listing would let the history of one store jump
    between variants and report price changes that never happened.
    """
    best: dict[str, PriceQuote] = {}
    for quote in quotes:
        current = best.get(quote.store_id)
        if current is None or quote.price < current.price:
            best[quote.store_id] = quote
    return list(best.values())


@dataclass
class _ProductProgress:
    product_id: str
    descriptor: ProductDescriptor | None = None
    fetched: list[PriceQuote] = field(default_factory=list)
    written: list[PriceQuote] = field(default_factory=list)
    adapter_failures: int = 0
    write_failures: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return bool(self.written)

    def to_result(self) -> ProductResult:
        error = self.error
        if not self.succeeded and error is None:
            error = "no quotes persisted"
        return ProductResult(
            product_id=self.product_id,
            outcome=ProductOutcome.SUCCEEDED if self.succeeded else ProductOutcome.FAILED,
            quotes_fetched=len(self.fetched),
            quotes_written=len(self.written),
            adapter_failures=self.adapter_failures,
            write_failures=self.write_failures,
            error=None if self.succeeded else error,
        )


@dataclass
class _RefreshJob:
    product_ids: list[str]
    deadline_at: float
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    state: JobState = JobState.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    progress: dict[str, _ProductProgress] = field(default_factory=dict)
    events: list[ChangeEvent] = field(default_factory=list)
    intents: list[NotificationIntent] = field(default_factory=list)
    notifications_sent: int = 0
    notification_failures: int = 0
    deadline_exceeded: bool = False

    def remaining(self) -> float:
        return max(self.deadline_at - asyncio.get_running_loop().time(), 0.0)

    def transition(self, state: JobState) -> None:
        self.state = state
        logger.info("refresh_job_state", state=state.value)


class RefreshOrchestrator:
    """Refresh prices for a batch of products and fire the alerts they satisfy.

    Job states: pending -> fetching -> reconciling -> alerting -> notifying -> completed.
    Each product ends up succeeded (at least one quote persisted) or failed;
    a failed product never aborts the rest of the batch.

    Fatal errors: an invalid batch (``InvalidRefreshRequest``) and storage
    that cannot be read or written at all (``StorageUnavailable``).
    """

    def __init__(
        self,
        store: IPriceStore,
        adapters: AdapterRegistry,
        dispatcher: INotificationDispatcher | None = None,
        detector: IChangeDetector | None = None,
        matcher: IAlertMatcher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._adapters = adapters
        self._dispatcher = dispatcher
        self._detector = detector or ChangeDetector()
        self._matcher = matcher or AlertMatcher()
        self._settings = settings or default_settings

    async def refresh(
        self,
        product_ids: Sequence[str],
        deadline_seconds: float | None = None,
    ) -> RefreshSummary:
        ids = _validate_product_ids(product_ids)
        budget = deadline_seconds or self._settings.refresh_deadline_seconds
        job = _RefreshJob(
            product_ids=ids,
            deadline_at=asyncio.get_running_loop().time() + budget,
        )
        job.progress = {pid: _ProductProgress(product_id=pid) for pid in ids}

        with structlog.contextvars.bound_contextvars(job_id=str(job.id)):
            logger.info("refresh_job_start", products=len(ids), deadline_seconds=budget)

            job.transition(JobState.FETCHING)
            stores = await self._fetch(job)

            job.transition(JobState.RECONCILING)
            await self._reconcile(job)

            job.transition(JobState.ALERTING)
            await self._alert(job, stores)

            job.transition(JobState.NOTIFYING)
            await self._notify(job)

            job.transition(JobState.COMPLETED)
            summary = self._summarize(job)
            logger.info(
                "refresh_job_complete",
                succeeded=summary.products_succeeded,
                failed=summary.products_failed,
                quotes_written=summary.quotes_written,
                notifications_sent=summary.notifications_sent,
                deadline_exceeded=summary.deadline_exceeded,
            )
            return summary

    # ── Fetching ──────────────────────────────────────────────────────────────

    async def _fetch(self, job: _RefreshJob) -> dict[str, StoreRead]:
        products = await self._store.get_products(job.product_ids)
        for product in products:
            job.progress[product.id].descriptor = product
        for progress in job.progress.values():
            if progress.descriptor is None:
                progress.error = "unknown product"
                logger.warning("unknown_product", product_id=progress.product_id)

        stores = await self._store.get_active_stores()
        adapters = self._adapters.for_stores(stores)
        if not adapters:
            logger.warning("no_store_adapters_configured", stores=len(stores))
            for progress in job.progress.values():
                if progress.descriptor is not None:
                    progress.error = "no store adapters configured"
            return {s.id: s for s in stores}

        semaphore = asyncio.Semaphore(self._settings.max_concurrent_fetches)
        tasks: dict[asyncio.Task[list[PriceQuote]], tuple[_ProductProgress, IStoreAdapter]] = {}
        for progress in job.progress.values():
            if progress.descriptor is None:
                continue
            for adapter in adapters:
                task = asyncio.create_task(
                    self._fetch_one(semaphore, adapter, progress.descriptor)
                )
                tasks[task] = (progress, adapter)

        if not tasks:
            return {s.id: s for s in stores}

        done, pending = await asyncio.wait(tasks, timeout=job.remaining())
        if pending:
            job.deadline_exceeded = True
            logger.warning("refresh_deadline_during_fetch", abandoned_calls=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task, (progress, adapter) in tasks.items():
            if task in pending or task.cancelled():
                progress.adapter_failures += 1
                continue
            exc = task.exception()
            if exc is not None:
                progress.adapter_failures += 1
                logger.warning(
                    "adapter_unavailable",
                    product_id=progress.product_id,
                    store_id=adapter.store_id,
                    error=str(exc),
                )
                continue
            progress.fetched.extend(task.result())

        for progress in job.progress.values():
            if progress.descriptor is not None and not progress.fetched:
                progress.error = progress.error or "no quotes from any store"
                logger.warning(
                    "product_fetch_failed",
                    product_id=progress.product_id,
                    adapter_failures=progress.adapter_failures,
                )

        return {s.id: s for s in stores}

    async def _fetch_one(
        self,
        semaphore: asyncio.Semaphore,
        adapter: IStoreAdapter,
        product: ProductDescriptor,
    ) -> list[PriceQuote]:
        async with semaphore:
            try:
                quotes = await adapter.fetch_quotes(
                    product,
                    self._settings.adapter_max_results,
                    timeout=self._settings.adapter_timeout_seconds,
                )
            except AdapterUnavailable:
                raise
            except Exception as exc:
                # Adapters must only raise AdapterUnavailable; contain anything else.
                raise AdapterUnavailable(adapter.store_id, repr(exc)) from exc

        return [
            quote
            for quote in quotes
            if quote.product_id == product.id and quote.store_id == adapter.store_id
        ]

    # ── Reconciling ───────────────────────────────────────────────────────────

    async def _reconcile(self, job: _RefreshJob) -> None:
        to_reconcile = [p for p in job.progress.values() if p.fetched]
        if not to_reconcile:
            return

        latest = await self._store.get_latest_quotes([p.product_id for p in to_reconcile])

        # Quotes that made it back before the deadline are always persisted.
        await asyncio.gather(
            *(self._reconcile_product(job, progress, latest) for progress in to_reconcile)
        )

        attempted = sum(len(p.written) + p.write_failures for p in to_reconcile)
        written = sum(len(p.written) for p in to_reconcile)
        if attempted and not written:
            raise StorageUnavailable(
                f"All {attempted} price writes failed; price store unreachable"
            )

    async def _reconcile_product(
        self,
        job: _RefreshJob,
        progress: _ProductProgress,
        latest: dict[tuple[str, str], PriceQuote],
    ) -> None:
        log = logger.bind(product_id=progress.product_id)

        for quote in _cheapest_per_store(progress.fetched):
            event = self._detector.detect(
                quote.product_id,
                quote.store_id,
                quote,
                latest.get((quote.product_id, quote.store_id)),
            )
            if await self._persist(quote):
                progress.written.append(quote)
                job.events.append(event)
            else:
                progress.write_failures += 1

        if progress.write_failures and not progress.written:
            progress.error = "all price writes failed"
        log.info(
            "product_reconciled",
            quotes_written=len(progress.written),
            write_failures=progress.write_failures,
        )

    async def _persist(self, quote: PriceQuote) -> bool:
        """Append one quote, retrying once with backoff before dropping it."""
        try:
            await self._store.append_quote(quote)
            return True
        except StorageWriteFailed as exc:
            logger.warning(
                "quote_write_retry",
                product_id=quote.product_id,
                store_id=quote.store_id,
                error=str(exc),
            )

        await asyncio.sleep(self._settings.storage_retry_backoff_seconds)
        try:
            await self._store.append_quote(quote)
            return True
        except StorageWriteFailed as exc:
            logger.error(
                "quote_write_dropped",
                product_id=quote.product_id,
                store_id=quote.store_id,
                error=str(exc),
            )
            return False

    # ── Alerting ──────────────────────────────────────────────────────────────

    async def _alert(self, job: _RefreshJob, stores: dict[str, StoreRead]) -> None:
        refreshed = [p for p in job.progress.values() if p.succeeded]
        if not refreshed:
            return

        alerts_by_product = await self._store.get_active_alerts([p.product_id for p in refreshed])

        for progress in refreshed:
            alerts = alerts_by_product.get(progress.product_id, [])
            if not alerts:
                continue

            intents = self._matcher.match(progress.product_id, progress.written, alerts)
            for intent in intents:
                if not await self._claim(intent):
                    continue
                store = stores.get(intent.store_id)
                job.intents.append(
                    intent.model_copy(
                        update={
                            "product_name": progress.descriptor.name if progress.descriptor else "",
                            "store_name": store.name if store else intent.store_id,
                        }
                    )
                )

        logger.info("alerting_complete", intents=len(job.intents))

    async def _claim(self, intent: NotificationIntent) -> bool:
        """Deactivate the alert behind ``intent``; only the winner of the CAS notifies."""
        for attempt in (1, 2):
            try:
                return await self._store.deactivate_alert(intent.alert_id)
            except StorageWriteFailed as exc:
                logger.warning(
                    "alert_deactivation_failed",
                    alert_id=str(intent.alert_id),
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt == 1:
                    await asyncio.sleep(self._settings.storage_retry_backoff_seconds)
        # Still active; it will be matched again on the next refresh.
        return False

    # ── Notifying ─────────────────────────────────────────────────────────────

    async def _notify(self, job: _RefreshJob) -> None:
        if not job.intents:
            return
        if self._dispatcher is None:
            logger.warning("no_dispatcher_configured", intents=len(job.intents))
            job.notification_failures = len(job.intents)
            return

        try:
            results = await self._dispatcher.dispatch(job.intents)
        except DispatchFailed as exc:
            logger.error("dispatch_failed", intents=len(job.intents), error=str(exc))
            job.notification_failures = len(job.intents)
            return
        except Exception:
            logger.error("dispatch_error", intents=len(job.intents), exc_info=True)
            job.notification_failures = len(job.intents)
            return

        job.notifications_sent = sum(1 for r in results if r.delivered)
        job.notification_failures = len(job.intents) - job.notifications_sent

    # ── Completed ─────────────────────────────────────────────────────────────

    def _summarize(self, job: _RefreshJob) -> RefreshSummary:
        results = [job.progress[pid].to_result() for pid in job.product_ids]
        counts = Counter(event.classification.value for event in job.events)
        by_classification = {c.value: counts.get(c.value, 0) for c in ChangeClassification}

        return RefreshSummary(
            job_id=job.id,
            state=job.state,
            products_requested=len(job.product_ids),
            products_succeeded=sum(1 for r in results if r.outcome is ProductOutcome.SUCCEEDED),
            products_failed=sum(1 for r in results if r.outcome is ProductOutcome.FAILED),
            quotes_written=sum(r.quotes_written for r in results),
            change_events_by_classification=by_classification,
            notifications_sent=job.notifications_sent,
            notification_failures=job.notification_failures,
            adapter_failures=sum(r.adapter_failures for r in results),
            write_failures=sum(r.write_failures for r in results),
            deadline_exceeded=job.deadline_exceeded,
            products=results,
            change_events=list(job.events),
            started_at=job.started_at,
            finished_at=datetime.now(timezone.utc),
        )
