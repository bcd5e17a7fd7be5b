from __future__ import annotations

import uuid
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pricewise.src.contracts.models import User


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == email)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, email: str) -> User:
        user = User(id=uuid.uuid4(), email=email)
        self._session.add(user)
        await self._session.flush()
        await self._session.refresh(user)
        return user

    async def get_many_with_devices(self, user_ids: Sequence[uuid.UUID]) -> list[User]:
        if not user_ids:
            return []
        stmt = (
            select(User)
            .where(User.id.in_(sorted(set(user_ids))))
            .options(selectinload(User.devices))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
