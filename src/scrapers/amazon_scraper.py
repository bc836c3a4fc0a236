# src/scrapers/amazon_scraper.py

"""Fetch adapter for amazon.com product pages."""

from bs4 import BeautifulSoup

from src.models.quote import Availability, RawQuote
from src.scrapers.base_scraper import BaseScraper


class AmazonScraper(BaseScraper):
    """Fetch adapter for amazon.com product pages."""

    def __init__(self) -> None:
        super().__init__("amazon")

    def _get_homepage(self) -> str:
        """Return the Amazon homepage URL."""
        return "https://www.amazon.com/"

    def _parse_page(self, soup: BeautifulSoup) -> RawQuote | None:
        """Parse the buy box, tolerating split whole/fraction prices."""
        quote = super()._parse_page(soup)
        if quote is not None:
            return quote

        whole = soup.select_one(".a-price-whole")
        if whole is None:
            return None
        fraction = soup.select_one(".a-price-fraction")
        text = whole.get_text(strip=True).rstrip(".")
        if fraction is not None:
            text = f"{text}.{fraction.get_text(strip=True)}"
        price = self.extract_price(text)
        if price is None or price <= 0:
            return None

        availability = self.classify_availability(
            self._select_text(soup, "availability")
        )
        if soup.select_one("#outOfStock") is not None:
            availability = Availability.OUT_OF_STOCK
        return RawQuote(
            price=price,
            availability=availability,
            currency=self.currency,
            title=self._select_text(soup, "title"),
        )
