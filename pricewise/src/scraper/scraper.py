from __future__ import annotations

import asyncio
import json
import random
import re
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote_plus, urljoin, urlparse
from urllib.robotparser import RobotFileParser

import httpx
import structlog
from bs4 import BeautifulSoup, Tag
from thefuzz import fuzz

from pricewise.src.config import settings
from pricewise.src.contracts.errors import AdapterUnavailable
from pricewise.src.contracts.models import (
    Availability,
    PriceQuote,
    ProductDescriptor,
    StoreRead,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_USER_AGENTS: list[str] = [
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15"
    ),
    (
        "Mozilla/5.0 (X11; Linux x86_64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) "
        "Gecko/20100101 Firefox/121.0"
    ),
]

_MAX_RETRIES: int = 3
_BACKOFF_BASE_SECONDS: float = 2.0

# Minimum token_set_ratio between the product name and a result title.
# Search pages list sponsored and related items that must not be quoted.
TITLE_MATCH_THRESHOLD = 80

# Words that mark a listing as an accessory for the product rather than the
# product itself. They only count when the product name does not contain them
# and they appear before a "with ..." bundle clause.
_ACCESSORY_MARKERS: frozenset[str] = frozenset(
    {
        "adapter",
        "band",
        "bumper",
        "cable",
        "case",
        "charger",
        "compatible",
        "cover",
        "dock",
        "film",
        "for",
        "holder",
        "mount",
        "protector",
        "replacement",
        "skin",
        "sleeve",
        "stand",
        "strap",
        "tempered",
        "wallet",
    }
)
_TOKEN_RE = re.compile(r"[a-z0-9]+")

_OUT_OF_STOCK_MARKERS: tuple[str, ...] = (
    "outofstock",
    "out of stock",
    "sold out",
    "soldout",
    "unavailable",
    "discontinued",
)
_IN_STOCK_MARKERS: tuple[str, ...] = (
    "instock",
    "in stock",
    "add to cart",
    "limitedavailability",
    "available",
)


def _random_user_agent() -> str:
    return random.choice(_USER_AGENTS)


def _parse_price(text: str) -> Decimal | None:
    """Extract a decimal price from text like '$1,299.99', '1.299,00 €', '149'.

    Returns None when no price can be read.
    """
    cleaned = text.strip()
    for token in ("US$", "$", "£", "€", "USD", "EUR", "GBP"):
        cleaned = cleaned.replace(token, "")
    cleaned = cleaned.replace("\xa0", "").replace(" ", "")
    # Keep only the first number when a range like "19.99-24.99" is shown
    if "-" in cleaned.strip("-"):
        cleaned = cleaned.strip("-").split("-")[0]
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            # e.g. "1.299,00" -> "1299.00"
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            # e.g. "1,299.00" -> "1299.00"
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        parts = cleaned.split(",")
        if len(parts) == 2 and len(parts[1]) == 2:
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value.quantize(Decimal("0.01"))


def _parse_availability(text: str | None) -> Availability:
    if not text:
        return Availability.UNKNOWN
    lowered = text.strip().lower()
    if any(marker in lowered for marker in _OUT_OF_STOCK_MARKERS):
        return Availability.OUT_OF_STOCK
    if any(marker in lowered for marker in _IN_STOCK_MARKERS):
        return Availability.IN_STOCK
    return Availability.UNKNOWN


def _is_accessory_listing(wanted: str, title: str) -> bool:
    """True when ``title`` sells something for the product, not the product.

    "Silicone Case for iPhone 15 Pro" contains every word of "Apple iPhone 15
    Pro" that a fuzzy subset match looks for, so it is rejected on its
    accessory words instead. A trailing "with ..." clause describes what is
    bundled ("AirPods Pro with MagSafe Charging Case") and is ignored.
    """
    wanted_tokens = set(_TOKEN_RE.findall(wanted))
    title_tokens = _TOKEN_RE.findall(title)
    if "with" in title_tokens:
        title_tokens = title_tokens[: title_tokens.index("with")]
    return any(
        token in _ACCESSORY_MARKERS and token not in wanted_tokens for token in title_tokens
    )


def _is_product_node(node: dict[str, Any]) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type
    return node_type == "Product"


def _collect_product_nodes(data: Any, found: list[dict[str, Any]]) -> None:
    """Walk parsed JSON-LD (dict, list, @graph, ItemList) collecting Product nodes."""
    if isinstance(data, list):
        for item in data:
            _collect_product_nodes(item, found)
        return
    if not isinstance(data, dict):
        return
    if _is_product_node(data):
        found.append(data)
        return
    for key in ("@graph", "itemListElement", "item"):
        if key in data:
            _collect_product_nodes(data[key], found)


def _first_offer(node: dict[str, Any]) -> dict[str, Any]:
    offers = node.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else {}
    if not isinstance(offers, dict):
        return {}
    # AggregateOffer nests its offers
    nested = offers.get("offers")
    if isinstance(nested, list) and nested and isinstance(nested[0], dict):
        merged = dict(nested[0])
        merged.setdefault("lowPrice", offers.get("lowPrice"))
        return merged
    return offers


def _offer_shipping(offer: dict[str, Any]) -> Decimal | None:
    details = offer.get("shippingDetails")
    if isinstance(details, list):
        details = details[0] if details else None
    if not isinstance(details, dict):
        return None
    rate = details.get("shippingRate")
    if isinstance(rate, dict) and rate.get("value") is not None:
        return _parse_price(str(rate["value"]))
    return None


class SearchPageAdapter:
    """Store adapter that reads a retailer's search results page.

    Results come from schema.org JSON-LD ``Product`` nodes when the page has
    them, and from the CSS card selectors otherwise. Subclasses configure the
    search URL and selectors for a specific retailer; stores without a
    dedicated subclass use this class with the store's ``search_url_template``.

    The only exception ``fetch_quotes`` raises is ``AdapterUnavailable``.
    """

    search_url_template: str = ""
    card_selector: str = "[itemtype*='schema.org/Product'], li.product, div.product-card"
    title_selector: str = "[itemprop='name'], .product-title, h2, h3"
    price_selector: str = "[itemprop='price'], .price, .product-price"
    link_selector: str = "a[href]"
    availability_selector: str = "[itemprop='availability'], .availability, .stock-status"
    shipping_selector: str = ".shipping, .fulfillment"

    def __init__(self, store: StoreRead, search_url_template: str | None = None) -> None:
        self._store = store
        template = search_url_template or store.search_url_template or self.search_url_template
        if not template or "{query}" not in template:
            raise ValueError(f"Store {store.id} has no usable search URL template")
        self._template = template
        self._last_request_time: float = 0.0
        self._rate_lock = asyncio.Lock()
        self._robots_lock = asyncio.Lock()
        self._robots_parser: RobotFileParser | None = None
        self._robots_checked: bool = False

    @property
    def store_id(self) -> str:
        return self._store.id

    @property
    def store_name(self) -> str:
        return self._store.name

    def search_url(self, product: ProductDescriptor) -> str:
        return self._template.format(query=quote_plus(product.search_text))

    @property
    def base_url(self) -> str:
        parsed = urlparse(self._template.format(query=""))
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def robots_url(self) -> str:
        return urljoin(self.base_url, "/robots.txt")

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": _random_user_agent(),
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
            follow_redirects=True,
            timeout=httpx.Timeout(30.0),
        )

    async def _enforce_request_delay(self) -> None:
        """Keep a minimum gap between requests to the same retailer."""
        async with self._rate_lock:
            min_delay = float(settings.scrape_min_delay_seconds)
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < min_delay:
                wait = min_delay - elapsed
                logger.debug("rate_limit_wait", store_id=self.store_id, wait_seconds=round(wait, 1))
                await asyncio.sleep(wait)
            self._last_request_time = time.monotonic()

    async def _check_robots_txt(self, url: str) -> bool:
        """Return True if fetching ``url`` is allowed by the retailer's robots.txt.

        robots.txt is fetched once per adapter. Concurrent first callers wait on
        the lock and then read the parsed rules instead of being let through
        while the fetch is still in flight.
        """
        async with self._robots_lock:
            if not self._robots_checked:
                await self._load_robots_txt()
                self._robots_checked = True

        allowed = self._robots_parser is None or self._robots_parser.can_fetch(
            _USER_AGENTS[0], url
        )
        logger.debug("robots_txt_checked", store_id=self.store_id, allowed=allowed)
        return allowed

    async def _load_robots_txt(self) -> None:
        log = logger.bind(store_id=self.store_id, robots_url=self.robots_url)
        try:
            async with self._build_client() as client:
                response = await client.get(self.robots_url)
        except httpx.HTTPError as exc:
            log.warning("robots_txt_fetch_error", error=str(exc))
            return

        if response.status_code != 200:
            # No robots.txt -> everything allowed
            log.info("robots_txt_not_found", status_code=response.status_code)
            return

        parser = RobotFileParser()
        parser.parse(response.text.splitlines())
        self._robots_parser = parser
        log.info("robots_txt_loaded")

    async def _fetch_html(self, url: str) -> str:
        """Fetch page HTML via httpx with retries and exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(1, _MAX_RETRIES + 1):
            await self._enforce_request_delay()
            log = logger.bind(store_id=self.store_id, url=url, attempt=attempt)
            try:
                async with self._build_client() as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    log.info("page_fetched", status_code=response.status_code)
                    return response.text
            except (httpx.HTTPStatusError, httpx.RequestError) as exc:
                last_error = exc
                backoff = _BACKOFF_BASE_SECONDS ** attempt
                log.warning("fetch_retry", error=str(exc), backoff_seconds=backoff)
                if attempt < _MAX_RETRIES:
                    await asyncio.sleep(backoff)

        raise RuntimeError(f"Failed to fetch {url} after {_MAX_RETRIES} retries") from last_error

    async def _fetch_with_playwright(self, url: str) -> str:
        """Fall back to Playwright for search pages rendered client-side."""
        log = logger.bind(store_id=self.store_id, url=url)
        log.info("playwright_fallback_start")
        try:
            from playwright.async_api import async_playwright

            async with async_playwright() as pw:
                browser = await pw.chromium.launch(headless=True)
                try:
                    context = await browser.new_context(user_agent=_random_user_agent())
                    page = await context.new_page()
                    await page.goto(url, wait_until="networkidle", timeout=60000)
                    await page.wait_for_selector(self.card_selector, timeout=15000)
                    html = await page.content()
                    log.info("playwright_fallback_success")
                    return html
                finally:
                    await browser.close()
        except Exception as exc:
            log.error("playwright_fallback_failed", error=str(exc))
            raise RuntimeError(f"Playwright fallback failed for {url}: {exc}") from exc

    # ── Parsing ───────────────────────────────────────────────────────────────

    def parse_quotes(
        self,
        html: str,
        product: ProductDescriptor,
        observed_at: datetime,
        max_results: int,
    ) -> list[PriceQuote]:
        """Parse quotes for ``product`` from a search results page."""
        soup = BeautifulSoup(html, "lxml")
        candidates = self._parse_ld_json(soup, product, observed_at)
        if not candidates:
            candidates = self._parse_cards(soup, product, observed_at)

        quotes = [q for q in candidates if self._title_matches(product, q.title)]
        logger.info(
            "quotes_parsed",
            store_id=self.store_id,
            product_id=product.id,
            candidates=len(candidates),
            matched=len(quotes),
        )
        return quotes[:max_results]

    def _title_matches(self, product: ProductDescriptor, title: str) -> bool:
        if not title:
            return False
        wanted = product.search_text.lower()
        if _is_accessory_listing(wanted, title.lower()):
            return False
        score = fuzz.token_set_ratio(wanted, title.lower())
        return score >= TITLE_MATCH_THRESHOLD

    def _parse_ld_json(
        self, soup: BeautifulSoup, product: ProductDescriptor, observed_at: datetime
    ) -> list[PriceQuote]:
        nodes: list[dict[str, Any]] = []
        for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
            try:
                data = json.loads(script.string or "")
            except (TypeError, ValueError):
                continue
            _collect_product_nodes(data, nodes)

        quotes: list[PriceQuote] = []
        for node in nodes:
            offer = _first_offer(node)
            raw_price = offer.get("price", offer.get("lowPrice"))
            if raw_price is None:
                continue
            price = _parse_price(str(raw_price))
            if price is None:
                continue
            url = str(offer.get("url") or node.get("url") or "")
            quotes.append(
                PriceQuote(
                    product_id=product.id,
                    store_id=self.store_id,
                    price=price,
                    availability=_parse_availability(str(offer.get("availability") or "")),
                    source_url=urljoin(self.base_url, url) if url else self.search_url(product),
                    observed_at=observed_at,
                    title=str(node.get("name") or ""),
                    shipping=_offer_shipping(offer),
                )
            )
        return quotes

    def _parse_cards(
        self, soup: BeautifulSoup, product: ProductDescriptor, observed_at: datetime
    ) -> list[PriceQuote]:
        quotes: list[PriceQuote] = []
        for card in soup.select(self.card_selector):
            try:
                quote = self._parse_single_card(card, product, observed_at)
            except Exception:
                logger.warning(
                    "card_parse_error",
                    store_id=self.store_id,
                    card_html=str(card)[:200],
                    exc_info=True,
                )
                continue
            if quote is not None:
                quotes.append(quote)
        return quotes

    def _parse_single_card(
        self, card: Tag, product: ProductDescriptor, observed_at: datetime
    ) -> PriceQuote | None:
        title_el = card.select_one(self.title_selector)
        title = title_el.get_text(strip=True) if title_el else ""

        price_el = card.select_one(self.price_selector)
        if price_el is None:
            return None
        raw_price = price_el.get("content") or price_el.get_text()
        price = _parse_price(str(raw_price))
        if price is None:
            return None

        link_el = card.select_one(self.link_selector)
        href = ""
        if link_el is not None:
            raw_href = link_el.get("href", "")
            href = raw_href if isinstance(raw_href, str) else str(raw_href)
        if not title and link_el is not None:
            title = link_el.get_text(strip=True)
        source_url = urljoin(self.base_url, href) if href else self.search_url(product)

        availability_el = card.select_one(self.availability_selector)
        availability_text: str | None = None
        if availability_el is not None:
            raw_availability = availability_el.get("href") or availability_el.get("content")
            availability_text = (
                str(raw_availability) if raw_availability else availability_el.get_text(strip=True)
            )

        shipping: Decimal | None = None
        shipping_el = card.select_one(self.shipping_selector)
        if shipping_el is not None:
            shipping_text = shipping_el.get_text(strip=True)
            if "free" in shipping_text.lower():
                shipping = Decimal("0.00")
            else:
                shipping = _parse_price(shipping_text)

        return PriceQuote(
            product_id=product.id,
            store_id=self.store_id,
            price=price,
            availability=_parse_availability(availability_text),
            source_url=source_url,
            observed_at=observed_at,
            title=title,
            shipping=shipping,
        )

    # ── Contract ──────────────────────────────────────────────────────────────

    async def _collect(self, product: ProductDescriptor, max_results: int) -> list[PriceQuote]:
        url = self.search_url(product)
        log = logger.bind(store_id=self.store_id, product_id=product.id, url=url)

        if not await self._check_robots_txt(url):
            log.warning("fetch_blocked_by_robots_txt")
            return []

        html = await self._fetch_html(url)
        observed_at = datetime.now(tz=timezone.utc)
        quotes = self.parse_quotes(html, product, observed_at, max_results)

        if not quotes and settings.playwright_fallback_enabled:
            log.info("no_quotes_found_trying_playwright")
            html = await self._fetch_with_playwright(url)
            observed_at = datetime.now(tz=timezone.utc)
            quotes = self.parse_quotes(html, product, observed_at, max_results)

        return quotes

    async def fetch_quotes(
        self,
        product: ProductDescriptor,
        max_results: int,
        timeout: float | None = None,
    ) -> list[PriceQuote]:
        """Fetch up to ``max_results`` quotes for ``product`` within ``timeout`` seconds."""
        log = logger.bind(store_id=self.store_id, product_id=product.id)
        try:
            quotes = await asyncio.wait_for(self._collect(product, max_results), timeout=timeout)
        except asyncio.TimeoutError as exc:
            log.warning("adapter_timeout", timeout_seconds=timeout)
            raise AdapterUnavailable(self.store_id, f"timed out after {timeout}s") from exc
        except Exception as exc:
            log.warning("adapter_error", error=str(exc))
            raise AdapterUnavailable(self.store_id, str(exc)) from exc

        log.info("quotes_fetched", count=len(quotes))
        return quotes


class AmazonAdapter(SearchPageAdapter):
    search_url_template = "https://www.amazon.com/s?k={query}"
    card_selector = "div[data-component-type='s-search-result']"
    title_selector = "h2 span, h2 a span"
    price_selector = "span.a-price span.a-offscreen"
    link_selector = "h2 a, a.a-link-normal.s-no-outline"
    availability_selector = "span[aria-label*='stock'], span.a-color-price"
    shipping_selector = "div[data-cy='delivery-recipe'] span"


class WalmartAdapter(SearchPageAdapter):
    search_url_template = "https://www.walmart.com/search?q={query}"
    card_selector = "div[data-item-id]"
    title_selector = "span[data-automation-id='product-title']"
    price_selector = "div[data-automation-id='product-price'] span.w_iUH7"
    link_selector = "a[link-identifier], a[href*='/ip/']"
    availability_selector = "div[data-automation-id='fulfillment-badge'], span.out-of-stock"
    shipping_selector = "div[data-automation-id='fulfillment-badge']"


class TargetAdapter(SearchPageAdapter):
    search_url_template = "https://www.target.com/s?searchTerm={query}"
    card_selector = "div[data-test='@web/site-top-of-funnel/ProductCardWrapper']"
    title_selector = "a[data-test='product-title']"
    price_selector = "span[data-test='current-price']"
    link_selector = "a[data-test='product-title']"
    availability_selector = "div[data-test='fulfillment-cell'], div[data-test='outOfStockMessage']"
    shipping_selector = "div[data-test='fulfillment-cell-shipping']"


class BestBuyAdapter(SearchPageAdapter):
    search_url_template = "https://www.bestbuy.com/site/searchpage.jsp?st={query}"
    card_selector = "li.sku-item"
    title_selector = "h4.sku-title a, h4.sku-header a"
    price_selector = "div.priceView-customer-price span[aria-hidden='true']"
    link_selector = "h4.sku-title a, h4.sku-header a"
    availability_selector = "button.add-to-cart-button"
    shipping_selector = "div.fulfillment-fulfillment-summary"
