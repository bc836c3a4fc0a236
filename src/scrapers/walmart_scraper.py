# src/scrapers/walmart_scraper.py

"""Fetch adapter for walmart.com product pages."""

from bs4 import BeautifulSoup, Tag

from src.models.quote import RawQuote
from src.scrapers.base_scraper import BaseScraper


class WalmartScraper(BaseScraper):
    """Fetch adapter for walmart.com product pages."""

    def __init__(self) -> None:
        super().__init__("walmart")

    def _get_homepage(self) -> str:
        """Return the Walmart homepage URL."""
        return "https://www.walmart.com/"

    def _parse_page(self, soup: BeautifulSoup) -> RawQuote | None:
        """Prefer the machine-readable ``itemprop=price`` content."""
        meta = soup.select_one('[itemprop="price"][content]')
        if isinstance(meta, Tag):
            price = self.extract_price(str(meta.get("content", "")))
            if price is not None and price > 0:
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
        return super()._parse_page(soup)
