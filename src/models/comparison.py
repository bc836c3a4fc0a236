# src/models/comparison.py

"""Multi-source comparison results and their persisted forms."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from src.models.quote import Availability, Quote

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PriceSummary:
    """Min / avg / max over the priced quotes of one refresh pass."""

    lowest: Decimal | None = None
    highest: Decimal | None = None
    average: Decimal | None = None
    source_count: int = 0

    @classmethod
    def from_quotes(cls, quotes: list[Quote]) -> "PriceSummary":
        """Derive the summary; non-positive prices are ignored."""
        prices = [q.price for q in quotes if q.price > 0]
        if not prices:
            return cls()
        average = (sum(prices, Decimal(0)) / len(prices)).quantize(
            _CENTS, rounding=ROUND_HALF_UP
        )
        return cls(
            lowest=min(prices),
            highest=max(prices),
            average=average,
            source_count=len(prices),
        )

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-safe primitives."""
        return {
            "lowest": _dec_str(self.lowest),
            "highest": _dec_str(self.highest),
            "average": _dec_str(self.average),
            "source_count": self.source_count,
        }


def _dec_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class ComparisonResult:
    """All quotes collected in one refresh pass for one product."""

    product_id: str
    checked_at: datetime
    quotes: tuple[Quote, ...] = ()
    summary: PriceSummary = field(default_factory=PriceSummary)
    failed_sources: tuple[str, ...] = ()

    @classmethod
    def from_quotes(
        cls,
        product_id: str,
        checked_at: datetime,
        quotes: list[Quote],
        failed_sources: list[str] | None = None,
    ) -> "ComparisonResult":
        """Build a result whose summary is derived from *quotes*."""
        ordered = sorted(quotes, key=lambda q: q.source)
        return cls(
            product_id=product_id,
            checked_at=checked_at,
            quotes=tuple(ordered),
            summary=PriceSummary.from_quotes(ordered),
            failed_sources=tuple(sorted(failed_sources or [])),
        )

    @property
    def is_empty(self) -> bool:
        """True when no source returned a quote ("no data")."""
        return not self.quotes

    @property
    def lowest_price(self) -> Decimal | None:
        """Cheapest priced quote, if any."""
        return self.summary.lowest

    @property
    def in_stock(self) -> bool:
        """True when at least one source reports the item in stock."""
        return any(
            q.availability is Availability.IN_STOCK for q in self.quotes
        )

    def availability(self) -> Availability:
        """Collapse per-source availability into one flag."""
        if self.in_stock:
            return Availability.IN_STOCK
        if any(
            q.availability is Availability.OUT_OF_STOCK
            for q in self.quotes
        ):
            return Availability.OUT_OF_STOCK
        return Availability.UNKNOWN


@dataclass(frozen=True)
class HistoryEntry:
    """One persisted comparison result in a product's history log."""

    entry_id: int
    result: ComparisonResult

    @property
    def product_id(self) -> str:
        return self.result.product_id

    @property
    def recorded_at(self) -> datetime:
        return self.result.checked_at

    @property
    def summary(self) -> PriceSummary:
        return self.result.summary


@dataclass(frozen=True)
class Snapshot:
    """The most recent committed comparison result for a product."""

    product_id: str
    result: ComparisonResult

    @property
    def refreshed_at(self) -> datetime:
        return self.result.checked_at

    @property
    def summary(self) -> PriceSummary:
        return self.result.summary

    @property
    def quotes(self) -> tuple[Quote, ...]:
        return self.result.quotes
