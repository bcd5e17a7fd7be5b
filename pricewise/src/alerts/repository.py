from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pricewise.src.contracts.models import PriceAlert


class AlertRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self, user_id: uuid.UUID, product_id: str, target_price: Decimal
    ) -> PriceAlert:
        alert = PriceAlert(
            id=uuid.uuid4(),
            user_id=user_id,
            product_id=product_id,
            target_price=target_price,
            is_active=True,
        )
        self._session.add(alert)
        await self._session.flush()
        await self._session.refresh(alert)
        return alert

    async def list_for_user(self, user_id: uuid.UUID) -> list[PriceAlert]:
        stmt = (
            select(PriceAlert)
            .where(PriceAlert.user_id == user_id)
            .order_by(PriceAlert.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_for_user(self, user_id: uuid.UUID, alert_id: uuid.UUID) -> PriceAlert | None:
        stmt = select(PriceAlert).where(
            PriceAlert.id == alert_id,
            PriceAlert.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_for_user(self, user_id: uuid.UUID, alert_id: uuid.UUID) -> bool:
        alert = await self.get_for_user(user_id, alert_id)
        if alert is None:
            return False
        await self._session.delete(alert)
        await self._session.flush()
        return True

    async def reactivate_for_user(
        self, user_id: uuid.UUID, alert_id: uuid.UUID
    ) -> PriceAlert | None:
        alert = await self.get_for_user(user_id, alert_id)
        if alert is None:
            return None
        alert.is_active = True
        alert.fired_at = None
        await self._session.flush()
        return alert

    async def get_active_for_products(self, product_ids: Sequence[str]) -> list[PriceAlert]:
        if not product_ids:
            return []
        stmt = (
            select(PriceAlert)
            .where(
                PriceAlert.product_id.in_(sorted(set(product_ids))),
                PriceAlert.is_active.is_(True),
            )
            .order_by(PriceAlert.created_at, PriceAlert.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def deactivate_if_active(self, alert_id: uuid.UUID) -> bool:
        """Compare-and-set ``is_active`` from True to False.

        Returns True only for the caller whose update flipped the row, which
        is what makes an alert fire at most once across concurrent jobs.
        """
        stmt = (
            update(PriceAlert)
            .where(PriceAlert.id == alert_id, PriceAlert.is_active.is_(True))
            .values(is_active=False, fired_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1
