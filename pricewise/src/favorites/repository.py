from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricewise.src.contracts.models import UserFavorite


class FavoriteRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, user_id: uuid.UUID, product_id: str) -> UserFavorite:
        """Favorite a product; adding the same product twice returns the existing row."""
        existing = await self._get(user_id, product_id)
        if existing is not None:
            return existing

        favorite = UserFavorite(id=uuid.uuid4(), user_id=user_id, product_id=product_id)
        self._session.add(favorite)
        await self._session.flush()
        await self._session.refresh(favorite)
        return favorite

    async def list_for_user(self, user_id: uuid.UUID) -> list[UserFavorite]:
        stmt = (
            select(UserFavorite)
            .where(UserFavorite.user_id == user_id)
            .order_by(UserFavorite.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_for_user(self, user_id: uuid.UUID, favorite_id: uuid.UUID) -> bool:
        stmt = select(UserFavorite).where(
            UserFavorite.id == favorite_id,
            UserFavorite.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        favorite = result.scalar_one_or_none()
        if favorite is None:
            return False
        await self._session.delete(favorite)
        await self._session.flush()
        return True

    async def _get(self, user_id: uuid.UUID, product_id: str) -> UserFavorite | None:
        stmt = select(UserFavorite).where(
            UserFavorite.user_id == user_id,
            UserFavorite.product_id == product_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
