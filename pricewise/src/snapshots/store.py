from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricewise.src.alerts.repository import AlertRepository
from pricewise.src.contracts.errors import StorageUnavailable, StorageWriteFailed
from pricewise.src.contracts.models import (
    PriceAlertRead,
    PriceQuote,
    ProductDescriptor,
    StoreRead,
)
from pricewise.src.products.repository import ProductRepository, StoreRepository
from pricewise.src.snapshots.repository import PriceSnapshotRepository

logger = structlog.get_logger(__name__)


class SqlPriceStore:
    """IPriceStore backed by SQLAlchemy, one short transaction per call.

    Each quote append and each alert deactivation commits on its own, so a
    failure only loses that single row and nothing needs cross-product locks.
    Reads raise ``StorageUnavailable``; writes raise ``StorageWriteFailed``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_products(self, product_ids: Sequence[str]) -> list[ProductDescriptor]:
        try:
            async with self._session_factory() as session:
                rows = await ProductRepository(session).get_many(product_ids)
                return [row.to_descriptor() for row in rows]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to load products: {exc}") from exc

    async def get_active_stores(self) -> list[StoreRead]:
        try:
            async with self._session_factory() as session:
                rows = await StoreRepository(session).get_active()
                return [row.to_schema() for row in rows]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to load stores: {exc}") from exc

    async def get_latest_quotes(
        self, product_ids: Sequence[str]
    ) -> dict[tuple[str, str], PriceQuote]:
        try:
            async with self._session_factory() as session:
                rows = await PriceSnapshotRepository(session).get_latest(product_ids)
                return {key: row.to_schema() for key, row in rows.items()}
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to load latest prices: {exc}") from exc

    async def append_quote(self, quote: PriceQuote) -> None:
        try:
            async with self._session_factory() as session:
                await PriceSnapshotRepository(session).append(quote)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageWriteFailed(
                f"Failed to persist quote for {quote.product_id}@{quote.store_id}: {exc}"
            ) from exc

    async def get_active_alerts(
        self, product_ids: Sequence[str]
    ) -> dict[str, list[PriceAlertRead]]:
        try:
            async with self._session_factory() as session:
                rows = await AlertRepository(session).get_active_for_products(product_ids)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Failed to load price alerts: {exc}") from exc

        by_product: dict[str, list[PriceAlertRead]] = defaultdict(list)
        for row in rows:
            by_product[row.product_id].append(row.to_schema())
        return dict(by_product)

    async def deactivate_alert(self, alert_id: uuid.UUID) -> bool:
        try:
            async with self._session_factory() as session:
                flipped = await AlertRepository(session).deactivate_if_active(alert_id)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageWriteFailed(f"Failed to deactivate alert {alert_id}: {exc}") from exc

        if not flipped:
            logger.info("alert_already_fired", alert_id=str(alert_id))
        return flipped
