# src/scrapers/registry.py

"""Lookup table of fetch adapters keyed by source id."""

import importlib
import logging
from typing import Any, Protocol

from src.config.settings import Settings
from src.models.quote import RawQuote

logger = logging.getLogger("price_watch.registry")


class FetchAdapter(Protocol):
    """Capability every source adapter provides."""

    def fetch_quote(self, url: str) -> RawQuote:
        """Return a quote for *url* or raise ``FetchError``."""
        ...


def _load_scraper_class(dotted_path: str) -> type[Any]:
    """Dynamically import a scraper class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls: type[Any] = getattr(module, class_name)
    return cls


class AdapterRegistry:
    """Creates one adapter per source on first use and caches it."""

    def __init__(
        self,
        sources: list[dict[str, str]] | None = None,
        adapters: dict[str, FetchAdapter] | None = None,
    ) -> None:
        self._sources: dict[str, str] = {
            s["id"]: s["scraper"]
            for s in (
                sources
                if sources is not None
                else Settings.AVAILABLE_SOURCES
            )
        }
        self._adapters: dict[str, FetchAdapter] = dict(adapters or {})

    def register(self, source: str, adapter: FetchAdapter) -> None:
        """Install (or replace) the adapter for *source*."""
        self._adapters[source] = adapter

    def source_ids(self) -> list[str]:
        """Every source id that can be resolved."""
        return sorted(set(self._sources) | set(self._adapters))

    def get(self, source: str) -> FetchAdapter | None:
        """Return the adapter for *source*, or None if unknown."""
        adapter = self._adapters.get(source)
        if adapter is not None:
            return adapter
        dotted_path = self._sources.get(source)
        if dotted_path is None:
            logger.warning("No adapter registered for source '%s'", source)
            return None
        adapter = _load_scraper_class(dotted_path)()
        self._adapters[source] = adapter
        logger.debug("Loaded adapter %s for '%s'", dotted_path, source)
        return adapter
