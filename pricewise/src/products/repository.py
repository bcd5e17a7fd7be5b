from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from pricewise.src.contracts.models import PriceAlert, Product, Store, UserFavorite


class ProductRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, product_id: str) -> Product | None:
        return await self._session.get(Product, product_id)

    async def get_many(self, product_ids: Sequence[str]) -> list[Product]:
        if not product_ids:
            return []
        stmt = select(Product).where(Product.id.in_(sorted(set(product_ids))))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self, latest_first: bool = False, limit: int | None = None) -> list[Product]:
        if latest_first:
            stmt = select(Product).order_by(Product.created_at.desc(), Product.id)
        else:
            stmt = select(Product).order_by(Product.name)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_tracked_ids(self) -> list[str]:
        """Products someone cares about: an active alert or a favorite."""
        stmt = union(
            select(PriceAlert.product_id).where(PriceAlert.is_active.is_(True)),
            select(UserFavorite.product_id),
        )
        result = await self._session.execute(stmt)
        return sorted(row[0] for row in result.all())


class StoreRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active(self) -> list[Store]:
        stmt = select(Store).where(Store.is_active.is_(True)).order_by(Store.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_many(self, store_ids: Sequence[str]) -> list[Store]:
        if not store_ids:
            return []
        stmt = select(Store).where(Store.id.in_(sorted(set(store_ids))))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
