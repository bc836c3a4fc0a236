# src/models/quote.py

"""Per-source price observation models."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class Availability(str, Enum):
    """Stock status reported by a source."""

    IN_STOCK = "in_stock"
    OUT_OF_STOCK = "out_of_stock"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RawQuote:
    """What an adapter extracts from one product page."""

    price: Decimal
    availability: Availability = Availability.UNKNOWN
    currency: str = "USD"
    title: str = ""
    original_price: Decimal | None = None


@dataclass(frozen=True)
class Quote:
    """One source's observation of a product's price at a point in time."""

    source: str
    product_id: str
    url: str
    price: Decimal
    observed_at: datetime
    availability: Availability = Availability.UNKNOWN
    currency: str = "USD"
    title: str = ""
    original_price: Decimal | None = None

    @classmethod
    def from_raw(
        cls,
        raw: RawQuote,
        source: str,
        product_id: str,
        url: str,
        observed_at: datetime,
    ) -> "Quote":
        """Stamp adapter output with its source and observation time."""
        return cls(
            source=source,
            product_id=product_id,
            url=url,
            price=raw.price,
            observed_at=observed_at,
            availability=raw.availability,
            currency=raw.currency,
            title=raw.title,
            original_price=raw.original_price,
        )

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-safe primitives."""
        return {
            "source": self.source,
            "product_id": self.product_id,
            "url": self.url,
            "price": str(self.price),
            "observed_at": self.observed_at.isoformat(),
            "availability": self.availability.value,
            "currency": self.currency,
            "title": self.title,
            "original_price": (
                str(self.original_price)
                if self.original_price is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Quote":
        """Rebuild a Quote from :meth:`to_dict` output."""
        original = data.get("original_price")
        return cls(
            source=str(data["source"]),
            product_id=str(data["product_id"]),
            url=str(data.get("url", "")),
            price=Decimal(str(data["price"])),
            observed_at=datetime.fromisoformat(str(data["observed_at"])),
            availability=Availability(
                str(data.get("availability", "unknown"))
            ),
            currency=str(data.get("currency", "USD")),
            title=str(data.get("title", "")),
            original_price=(
                Decimal(str(original)) if original is not None else None
            ),
        )
