from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from pricewise.src.contracts.models import PriceQuote, PriceRow


class PriceSnapshotRepository:
    """Append-only access to the ``prices`` table.

    Snapshot order for a (product, store) is ``observed_at`` and then row id,
    so two quotes with the same timestamp keep their insertion order.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, quote: PriceQuote) -> PriceRow:
        row = PriceRow(
            product_id=quote.product_id,
            store_id=quote.store_id,
            price=quote.price,
            availability=quote.availability.value,
            source_url=quote.source_url,
            title=quote.title[:500],
            shipping=quote.shipping,
            observed_at=quote.observed_at,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_latest(
        self, product_ids: Sequence[str]
    ) -> dict[tuple[str, str], PriceRow]:
        """Most recent row per (product, store) for every product in one query."""
        if not product_ids:
            return {}

        ranked = (
            select(
                PriceRow,
                func.row_number()
                .over(
                    partition_by=(PriceRow.product_id, PriceRow.store_id),
                    order_by=(PriceRow.observed_at.desc(), PriceRow.id.desc()),
                )
                .label("rn"),
            )
            .where(PriceRow.product_id.in_(sorted(set(product_ids))))
            .subquery()
        )
        latest = aliased(PriceRow, ranked)
        stmt = select(latest).where(ranked.c.rn == 1)
        result = await self._session.execute(stmt)
        return {(row.product_id, row.store_id): row for row in result.scalars().all()}

    async def get_history(
        self,
        product_id: str,
        store_id: str | None = None,
        limit: int | None = None,
    ) -> list[PriceRow]:
        """History in snapshot order (oldest first); ``limit`` keeps the newest rows."""
        stmt = select(PriceRow).where(PriceRow.product_id == product_id)
        if store_id is not None:
            stmt = stmt.where(PriceRow.store_id == store_id)

        if limit is None:
            stmt = stmt.order_by(PriceRow.observed_at, PriceRow.id)
            result = await self._session.execute(stmt)
            return list(result.scalars().all())

        stmt = stmt.order_by(PriceRow.observed_at.desc(), PriceRow.id.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(reversed(result.scalars().all()))
