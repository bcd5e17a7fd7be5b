from __future__ import annotations

import uuid
from collections.abc import Sequence

import structlog

from pricewise.src.contracts.errors import InvalidAlertThreshold
from pricewise.src.contracts.models import NotificationIntent, PriceAlertRead, PriceQuote

logger = structlog.get_logger(__name__)


def _best_quote(product_id: str, quotes: Sequence[PriceQuote]) -> PriceQuote | None:
    """Return the cheapest quote for the product.

    Ties go to the earliest quote in input order, so the result is stable
    for a given batch.
    """
    best: PriceQuote | None = None
    for quote in quotes:
        if quote.product_id != product_id:
            continue
        if best is None or quote.price < best.price:
            best = quote
    return best


def _check_threshold(alert: PriceAlertRead) -> None:
    if alert.target_price is None or alert.target_price <= 0:
        raise InvalidAlertThreshold(alert.id, alert.target_price)


class AlertMatcher:
    """Match a product's refreshed quotes against the standing price alerts on it.

    Rules:
    - Only active alerts on ``product_id`` are considered.
    - The best (minimum) price across all stores in this batch is compared
      against each alert's target; ``best <= target`` fires the alert.
    - Without any quote for the product nothing fires and alerts stay active.
    - An alert fires at most once per call, even if it is listed twice.
    - Alerts with a non-positive target are skipped and logged.
    """

    def match(
        self,
        product_id: str,
        updated_quotes: Sequence[PriceQuote],
        active_alerts: Sequence[PriceAlertRead],
    ) -> list[NotificationIntent]:
        log = logger.bind(product_id=product_id)

        best = _best_quote(product_id, updated_quotes)
        if best is None:
            log.debug("no_quotes_for_product", alerts_count=len(active_alerts))
            return []

        intents: list[NotificationIntent] = []
        fired: set[uuid.UUID] = set()

        for alert in active_alerts:
            if alert.product_id != product_id or not alert.is_active:
                continue
            if alert.id in fired:
                continue

            try:
                _check_threshold(alert)
            except InvalidAlertThreshold as exc:
                log.warning("invalid_alert_threshold", alert_id=str(alert.id), error=str(exc))
                continue

            if best.price > alert.target_price:
                continue

            fired.add(alert.id)
            log.info(
                "alert_matched",
                alert_id=str(alert.id),
                user_id=str(alert.user_id),
                store_id=best.store_id,
                price=str(best.price),
                target_price=str(alert.target_price),
            )
            intents.append(
                NotificationIntent(
                    alert_id=alert.id,
                    user_id=alert.user_id,
                    product_id=product_id,
                    store_id=best.store_id,
                    triggering_price=best.price,
                    target_price=alert.target_price,
                    savings=alert.target_price - best.price,
                    source_url=best.source_url,
                )
            )

        log.info(
            "matching_complete",
            alerts_count=len(active_alerts),
            intents_count=len(intents),
            best_price=str(best.price),
        )

        return intents
