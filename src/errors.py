# src/errors.py

"""Exception hierarchy for the price_watch engine."""


class PriceWatchError(Exception):
    """Base class for all engine errors."""


class FetchError(PriceWatchError):
    """A single source fetch failed (transport, block page, no price)."""

    def __init__(self, source: str, url: str, reason: str) -> None:
        super().__init__(f"[{source}] {reason} ({url})")
        self.source = source
        self.url = url
        self.reason = reason


class StoreError(PriceWatchError):
    """The persistence layer rejected or failed a write."""


class StaleResultError(StoreError):
    """A result older than the current snapshot was offered for append."""


class ProductNotFoundError(PriceWatchError):
    """No catalog product exists with the given id."""


class WatchNotFoundError(PriceWatchError):
    """No watch exists with the given id."""


class InvalidWatchError(PriceWatchError):
    """A watch definition is missing its threshold or baseline."""
