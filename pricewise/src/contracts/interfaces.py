from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Protocol

from pricewise.src.contracts.models import (
    ChangeEvent,
    DeliveryResult,
    NotificationIntent,
    PriceAlertRead,
    PriceQuote,
    ProductDescriptor,
    SearchIntent,
    StoreRead,
)


class IStoreAdapter(Protocol):
    store_id: str

    async def fetch_quotes(
        self,
        product: ProductDescriptor,
        max_results: int,
        timeout: float | None = None,
    ) -> list[PriceQuote]: ...


class IChangeDetector(Protocol):
    def detect(
        self,
        product_id: str,
        store_id: str,
        new_quote: PriceQuote,
        last_quote: PriceQuote | None,
    ) -> ChangeEvent: ...


class IAlertMatcher(Protocol):
    def match(
        self,
        product_id: str,
        updated_quotes: Sequence[PriceQuote],
        active_alerts: Sequence[PriceAlertRead],
    ) -> list[NotificationIntent]: ...


class IPriceStore(Protocol):
    async def get_products(self, product_ids: Sequence[str]) -> list[ProductDescriptor]: ...

    async def get_active_stores(self) -> list[StoreRead]: ...

    async def get_latest_quotes(
        self, product_ids: Sequence[str]
    ) -> dict[tuple[str, str], PriceQuote]: ...

    async def append_quote(self, quote: PriceQuote) -> None: ...

    async def get_active_alerts(
        self, product_ids: Sequence[str]
    ) -> dict[str, list[PriceAlertRead]]: ...

    async def deactivate_alert(self, alert_id: uuid.UUID) -> bool: ...


class INotificationDispatcher(Protocol):
    async def dispatch(
        self, intents: Sequence[NotificationIntent]
    ) -> list[DeliveryResult]: ...


class ISearchIntentAnalyzer(Protocol):
    def analyze(self, query: str) -> SearchIntent: ...
