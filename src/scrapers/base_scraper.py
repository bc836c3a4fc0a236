# src/scrapers/base_scraper.py

"""Abstract base class for all retailer fetch adapters."""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any

import cloudscraper  # type: ignore[import-untyped]
from bs4 import BeautifulSoup, Tag
from curl_cffi import requests as curl_requests

from src.config.settings import Settings
from src.errors import FetchError
from src.models.quote import Availability, RawQuote
from src.scrapers.circuit_breaker import CircuitBreaker

_PRICE_RE = re.compile(r"\d+(?:\.\d+)?")

_OUT_OF_STOCK_MARKERS: tuple[str, ...] = (
    "out of stock",
    "currently unavailable",
    "sold out",
    "not available",
    "unavailable",
)

_IN_STOCK_MARKERS: tuple[str, ...] = (
    "in stock",
    "available",
    "ships",
    "delivery",
    "pickup",
    "add to cart",
    "more than",
    "left",
)

_CHALLENGE_MARKERS: tuple[str, ...] = (
    "challenges.cloudflare.com",
    "cdn-cgi/challenge-platform",
    "just a moment",
    "cf-turnstile",
    "cf_chl_opt",
)

# Below this size a page mentioning a CAPTCHA keyword is an interstitial
_MIN_PRODUCT_PAGE = 5000
_MIN_FALLBACK_SECONDS = 1.0


def block_reason(html: str, captcha_keywords: list[str]) -> str | None:
    """Why *html* looks like a bot wall rather than a product page."""
    lower = html.lower()
    challenge = next((m for m in _CHALLENGE_MARKERS if m in lower), None)
    if challenge:
        return f"cloudflare challenge ({challenge})"
    if "<body" in lower and len(html) > _MIN_PRODUCT_PAGE:
        return None
    keyword = next((k for k in captcha_keywords if k in lower), None)
    return f"captcha page ({keyword})" if keyword else None


class BaseScraper(ABC):
    """Abstract base class for all retailer fetch adapters.

    One instance serves every product URL of its source.  Each call to
    :meth:`fetch_quote` makes a single attempt; retry policy belongs to
    the fetch coordinator.
    """

    currency: str = "USD"

    def __init__(self, source_name: str) -> None:
        self.source_name = source_name
        self.logger = logging.getLogger(
            f"price_watch.scrapers.{source_name}"
        )
        self.settings = Settings()
        self.selectors: dict[str, str] = self._load_selectors()
        self.session = curl_requests.Session(
            impersonate=self.settings.IMPERSONATE_BROWSER
        )
        self.breaker = CircuitBreaker(
            source_name,
            threshold=self.settings.CIRCUIT_BREAKER_THRESHOLD,
            cooldown=self.settings.CIRCUIT_BREAKER_COOLDOWN,
        )

    def _load_selectors(self) -> dict[str, str]:
        """This source's entry from selectors.json (empty if missing)."""
        with open(self.settings.SELECTORS_PATH, encoding="utf-8") as fh:
            by_source: dict[str, Any] = json.load(fh)
        return dict(by_source.get(self.source_name, {}))

    # ── HTTP ─────────────────────────────────────────────

    def _accept(self, status_code: int, text: str, via: str) -> bool:
        if status_code != 200:
            self.logger.warning(
                "[%s] %s got HTTP %d", self.source_name, via, status_code,
            )
            return False
        reason = block_reason(text, self.settings.CAPTCHA_KEYWORDS)
        if reason:
            self.logger.warning(
                "[%s] %s blocked: %s", self.source_name, via, reason,
            )
            return False
        return True

    def _fetch_html(self, url: str) -> str | None:
        """One GET through the impersonating session, cloudscraper fallback.

        Both transports share one REQUEST_TIMEOUT budget, so the call as a
        whole ends within the coordinator's per-fetch timeout.
        """
        headers: dict[str, str] = {
            **self.settings.DEFAULT_HEADERS,
            "Referer": self._get_homepage(),
        }
        budget = float(self.settings.REQUEST_TIMEOUT)
        started = time.monotonic()

        try:
            resp = self.session.get(url, headers=headers, timeout=budget)
            if self._accept(resp.status_code, resp.text, "curl_cffi"):
                return resp.text
        except Exception as exc:
            self.logger.warning(
                "[%s] curl_cffi error on %s: %s",
                self.source_name,
                url,
                exc,
                exc_info=True,
            )

        remaining = budget - (time.monotonic() - started)
        if remaining < _MIN_FALLBACK_SECONDS:
            self.logger.warning(
                "[%s] No time left for cloudscraper fallback on %s",
                self.source_name,
                url,
            )
            return None

        try:
            fallback: Any = cloudscraper.create_scraper()
            resp2: Any = fallback.get(url, headers=headers, timeout=remaining)
            text = str(resp2.text)
            if self._accept(resp2.status_code, text, "cloudscraper"):
                return text
        except Exception as exc:
            self.logger.error(
                "[%s] cloudscraper error on %s: %s",
                self.source_name,
                url,
                exc,
                exc_info=True,
            )
        return None

    def fetch_quote(self, url: str) -> RawQuote:
        """Fetch *url* and extract a normalised price quote.

        Raises:
            FetchError: circuit open, transport failure, block page,
                or no parsable price on the page.
        """
        if self.breaker.blocks():
            raise FetchError(self.source_name, url, "circuit open")

        html = self._fetch_html(url)
        if html is None:
            self.breaker.record_failure()
            raise FetchError(self.source_name, url, "page not retrieved")

        soup = BeautifulSoup(html, "lxml")
        quote = self._parse_page(soup)
        if quote is None:
            self.breaker.record_failure()
            raise FetchError(self.source_name, url, "no price on page")

        self.breaker.record_success()
        return quote

    # ── Parsing ──────────────────────────────────────────

    def _select_text(self, soup: BeautifulSoup, key: str) -> str:
        """Text of the first element matching selector *key*."""
        selector = self.selectors.get(key, "")
        if not selector:
            return ""
        el = soup.select_one(selector)
        return el.get_text(" ", strip=True) if isinstance(el, Tag) else ""

    def _parse_page(self, soup: BeautifulSoup) -> RawQuote | None:
        """Build a RawQuote from a product page using the selector map."""
        price = self.extract_price(self._select_text(soup, "price"))
        if price is None or price <= 0:
            return None
        return RawQuote(
            price=price,
            availability=self.classify_availability(
                self._select_text(soup, "availability")
            ),
            currency=self.currency,
            title=self._select_text(soup, "title"),
            original_price=self.extract_price(
                self._select_text(soup, "original_price")
            ),
        )

    @staticmethod
    def extract_price(text: str | None) -> Decimal | None:
        """Extract a price from a string like '$1,299.00'."""
        if not text:
            return None
        match = _PRICE_RE.search(text.replace(",", ""))
        if not match:
            return None
        try:
            return Decimal(match.group(0))
        except InvalidOperation:
            return None

    @staticmethod
    def classify_availability(text: str | None) -> Availability:
        """Map free-form stock text onto :class:`Availability`."""
        if not text:
            return Availability.UNKNOWN
        lower = text.lower()
        if any(marker in lower for marker in _OUT_OF_STOCK_MARKERS):
            return Availability.OUT_OF_STOCK
        if any(marker in lower for marker in _IN_STOCK_MARKERS):
            return Availability.IN_STOCK
        return Availability.UNKNOWN

    @abstractmethod
    def _get_homepage(self) -> str:
        """Return the homepage URL for the Referer header."""
        ...
