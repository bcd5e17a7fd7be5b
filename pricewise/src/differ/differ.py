from __future__ import annotations

from decimal import Decimal

import structlog

from pricewise.src.contracts.models import ChangeClassification, ChangeEvent, PriceQuote

logger = structlog.get_logger(__name__)

_PERCENT_QUANTUM = Decimal("0.01")


class ChangeDetector:
    """Compare a fresh quote with the last persisted quote for the same (product, store).

    Classification:
    - new: no prior quote exists
    - unchanged: exact Decimal equality, no tolerance
    - increase / decrease: by the sign of the delta

    A previous price of zero yields ``delta_percent = 0`` rather than dividing by it.
    """

    def detect(
        self,
        product_id: str,
        store_id: str,
        new_quote: PriceQuote,
        last_quote: PriceQuote | None,
    ) -> ChangeEvent:
        if last_quote is None:
            return ChangeEvent(
                product_id=product_id,
                store_id=store_id,
                old_price=None,
                new_price=new_quote.price,
                delta=None,
                delta_percent=None,
                classification=ChangeClassification.NEW,
            )

        old_price = last_quote.price
        delta = new_quote.price - old_price

        if old_price == 0:
            delta_percent = Decimal("0")
        else:
            delta_percent = (delta / old_price * 100).quantize(_PERCENT_QUANTUM)

        if delta == 0:
            classification = ChangeClassification.UNCHANGED
        elif delta > 0:
            classification = ChangeClassification.INCREASE
        else:
            classification = ChangeClassification.DECREASE

        if classification is not ChangeClassification.UNCHANGED:
            logger.debug(
                "price_change_detected",
                product_id=product_id,
                store_id=store_id,
                old_price=str(old_price),
                new_price=str(new_quote.price),
                classification=classification.value,
            )

        return ChangeEvent(
            product_id=product_id,
            store_id=store_id,
            old_price=old_price,
            new_price=new_quote.price,
            delta=delta,
            delta_percent=delta_percent,
            classification=classification,
        )
