# src/scrapers/target_scraper.py

"""Fetch adapter for target.com product pages."""

from src.scrapers.base_scraper import BaseScraper


class TargetScraper(BaseScraper):
    """Fetch adapter for target.com product pages."""

    def __init__(self) -> None:
        super().__init__("target")

    def _get_homepage(self) -> str:
        """Return the Target homepage URL."""
        return "https://www.target.com/"
