from __future__ import annotations

from collections.abc import Iterable

import structlog

from pricewise.src.contracts.interfaces import IStoreAdapter
from pricewise.src.contracts.models import StoreRead
from pricewise.src.scraper.scraper import (
    AmazonAdapter,
    BestBuyAdapter,
    SearchPageAdapter,
    TargetAdapter,
    WalmartAdapter,
)

logger = structlog.get_logger(__name__)

RETAILER_ADAPTERS: dict[str, type[SearchPageAdapter]] = {
    "amazon": AmazonAdapter,
    "walmart": WalmartAdapter,
    "target": TargetAdapter,
    "bestbuy": BestBuyAdapter,
}


class AdapterRegistry:
    """Resolve the store adapter for each store row.

    Adding a retailer means adding an adapter class to ``RETAILER_ADAPTERS``
    (or giving the store a ``search_url_template``); the orchestrator does not
    change. Adapters are cached per store so their robots.txt and rate-limit
    state survive across refresh jobs.
    """

    def __init__(self, adapters: dict[str, IStoreAdapter] | None = None) -> None:
        self._adapters: dict[str, IStoreAdapter] = dict(adapters or {})

    def register(self, store_id: str, adapter: IStoreAdapter) -> None:
        self._adapters[store_id] = adapter

    def get(self, store: StoreRead) -> IStoreAdapter | None:
        adapter = self._adapters.get(store.id)
        if adapter is not None:
            return adapter

        adapter_cls = RETAILER_ADAPTERS.get(store.id)
        try:
            if adapter_cls is not None:
                adapter = adapter_cls(store)
            elif store.search_url_template:
                adapter = SearchPageAdapter(store)
        except ValueError as exc:
            logger.warning("adapter_config_invalid", store_id=store.id, error=str(exc))
            return None

        if adapter is None:
            logger.warning("no_adapter_for_store", store_id=store.id)
            return None

        self._adapters[store.id] = adapter
        return adapter

    def for_stores(self, stores: Iterable[StoreRead]) -> list[IStoreAdapter]:
        adapters: list[IStoreAdapter] = []
        for store in stores:
            adapter = self.get(store)
            if adapter is not None:
                adapters.append(adapter)
        return adapters
