from __future__ import annotations

import re
from collections.abc import Iterable

import structlog
from thefuzz import fuzz

from pricewise.src.contracts.models import PriceRange, ProductMatch, ProductRead, SearchIntent

logger = structlog.get_logger(__name__)

PRODUCT_TYPES = (
    "phone", "iphone", "smartphone", "mobile",
    "laptop", "macbook", "computer", "pc",
    "headphones", "earbuds", "airpods",
    "tablet", "ipad",
    "watch", "smartwatch",
    "tv", "television", "monitor",
    "camera", "gaming", "console",
)

BRANDS = (
    "apple", "samsung", "google", "microsoft", "sony",
    "lg", "dell", "hp", "lenovo", "asus",
)

FEATURES = (
    "wireless", "bluetooth", "noise cancelling", "waterproof",
    "fast charging", "long battery", "high resolution", "4k",
    "gaming", "professional", "portable", "lightweight",
)

CATEGORIES: dict[str, tuple[str, ...]] = {
    "electronics": ("phone", "laptop", "computer", "tablet", "tv", "camera"),
    "gaming": ("gaming", "console", "xbox", "playstation", "nintendo"),
    "audio": ("headphones", "earbuds", "speaker", "sound"),
    "wearables": ("watch", "fitness", "tracker"),
}

# Checked in order; the first pattern that matches wins.
_PRICE_PATTERNS = (
    re.compile(r"between \$?(\d+) and \$?(\d+)", re.IGNORECASE),
    re.compile(r"\$?(\d+)\s*-\s*\$?(\d+)"),
    re.compile(r"under \$?(\d+)", re.IGNORECASE),
    re.compile(r"below \$?(\d+)", re.IGNORECASE),
    re.compile(r"less than \$?(\d+)", re.IGNORECASE),
)

BRAND_WEIGHT = 0.4
TYPE_WEIGHT = 0.3
CATEGORY_WEIGHT = 0.2
FEATURE_WEIGHT = 0.05
NAME_SIMILARITY_WEIGHT = 0.1
MIN_CONFIDENCE = 0.1


def _contains_word(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text) is not None


def _first_term(text: str, terms: Iterable[str]) -> str | None:
    for term in terms:
        if _contains_word(text, term):
            return term
    return None


def extract_price_range(query: str) -> PriceRange | None:
    for pattern in _PRICE_PATTERNS:
        match = pattern.search(query)
        if match is None:
            continue
        if match.lastindex and match.lastindex >= 2:
            low, high = sorted((int(match.group(1)), int(match.group(2))))
            return PriceRange(min=low, max=high)
        return PriceRange(max=int(match.group(1)))
    return None


def extract_category(query: str) -> str | None:
    for category, keywords in CATEGORIES.items():
        if _first_term(query, keywords) is not None:
            return category
    return None


class SearchIntentAnalyzer:
    """Keyword-based search intent extraction and catalog ranking."""

    def analyze(self, query: str) -> SearchIntent:
        text = query.lower().strip()
        intent = SearchIntent(
            product_type=_first_term(text, PRODUCT_TYPES) or "general",
            brand=_first_term(text, BRANDS),
            price_range=extract_price_range(text),
            features=[f for f in FEATURES if _contains_word(text, f)],
            category=extract_category(text),
        )
        logger.debug("search_intent_analyzed", query=query, product_type=intent.product_type)
        return intent

    def find_matches(
        self,
        intent: SearchIntent,
        products: Iterable[ProductRead],
        category: str | None = None,
        max_results: int = 10,
        query: str = "",
    ) -> list[ProductMatch]:
        """Rank catalog products against ``intent``, best first."""
        matches: list[ProductMatch] = []
        for product in products:
            confidence, reasons = self._score(product, intent, category, query)
            if confidence <= MIN_CONFIDENCE:
                continue
            matches.append(
                ProductMatch(
                    id=product.id,
                    name=product.name,
                    description=product.description,
                    category=product.category,
                    brand=product.brand,
                    confidence=round(confidence, 4),
                    reasons=reasons,
                )
            )

        matches.sort(key=lambda m: (-m.confidence, m.name))
        return matches[:max_results]

    def _score(
        self,
        product: ProductRead,
        intent: SearchIntent,
        category: str | None,
        query: str,
    ) -> tuple[float, list[str]]:
        confidence = 0.0
        reasons: list[str] = []
        name = product.name.lower()
        haystack = f"{name} {product.description.lower()}"

        if intent.brand and intent.brand in product.brand.lower():
            confidence += BRAND_WEIGHT
            reasons.append(f"Brand match: {product.brand}")

        if intent.product_type != "general" and intent.product_type in name:
            confidence += TYPE_WEIGHT
            reasons.append(f"Product type match: {intent.product_type}")

        wanted_category = category or intent.category
        if wanted_category and product.category.lower() == wanted_category.lower():
            confidence += CATEGORY_WEIGHT
            reasons.append(f"Category match: {product.category}")

        for feature in intent.features:
            if feature in haystack:
                confidence += FEATURE_WEIGHT
                reasons.append(f"Feature match: {feature}")

        if query:
            similarity = fuzz.token_set_ratio(query.lower(), name) / 100
            confidence += NAME_SIMILARITY_WEIGHT * similarity
            if similarity >= 0.8:
                reasons.append("Name closely matches query")

        return confidence, reasons
