# src/models/product.py

"""Catalog product model for inter-module data flow."""

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass
class CatalogProduct:
    """A tracked catalog item and the retailer pages that sell it."""

    id: str
    name: str
    baseline_price: Decimal | None = None
    source_urls: dict[str, str] = field(
        default_factory=lambda: dict[str, str]()
    )
    featured: bool = False

    @property
    def configured_sources(self) -> dict[str, str]:
        """Source URLs with blank entries dropped."""
        return {
            source: url
            for source, url in self.source_urls.items()
            if url and url.strip()
        }
