# src/scrapers/ebay_scraper.py

"""Fetch adapter for ebay.com listing pages."""

from bs4 import BeautifulSoup

from src.models.quote import Availability, RawQuote
from src.scrapers.base_scraper import BaseScraper


class EbayScraper(BaseScraper):
    """Fetch adapter for ebay.com listing pages."""

    def __init__(self) -> None:
        super().__init__("ebay")

    def _get_homepage(self) -> str:
        """Return the eBay homepage URL."""
        return "https://www.ebay.com/"

    def _parse_page(self, soup: BeautifulSoup) -> RawQuote | None:
        """Ended listings are reported out of stock."""
        quote = super()._parse_page(soup)
        if quote is None:
            return None
        if soup.select_one(".vi-msg-ended, .d-statusmessage") is not None:
            return RawQuote(
                price=quote.price,
                availability=Availability.OUT_OF_STOCK,
                currency=quote.currency,
                title=quote.title,
                original_price=quote.original_price,
            )
        if quote.availability is Availability.UNKNOWN:
            # Live listings without a quantity banner are purchasable
            return RawQuote(
                price=quote.price,
                availability=Availability.IN_STOCK,
                currency=quote.currency,
                title=quote.title,
                original_price=quote.original_price,
            )
        return quote
