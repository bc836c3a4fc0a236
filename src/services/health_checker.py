# src/services/health_checker.py

"""Retailer reachability and circuit-breaker status."""

import asyncio
import logging
import time
from dataclasses import dataclass

from src.scrapers.base_scraper import BaseScraper
from src.scrapers.registry import AdapterRegistry

logger = logging.getLogger("price_watch.health")

_PROBE_TIMEOUT = 10  # seconds per source
_SLOW_MS = 5000.0


@dataclass
class SourceHealth:
    """Reachability of one retailer plus its adapter's breaker state."""

    source_id: str
    status: str  # "ok", "slow", "down", "blocked"
    latency_ms: float
    message: str = ""


def _classify(status_code: int, latency_ms: float) -> tuple[str, str]:
    if status_code != 200:
        return "down", f"HTTP {status_code}"
    if latency_ms > _SLOW_MS:
        return "slow", "High latency"
    return "ok", ""


def probe_adapter(source_id: str, adapter: BaseScraper) -> SourceHealth:
    """GET the retailer homepage through the adapter's own session."""
    if adapter.breaker.cooling_down:
        return SourceHealth(
            source_id=source_id,
            status="blocked",
            latency_ms=0.0,
            message="circuit breaker open",
        )

    homepage = adapter._get_homepage()
    start = time.monotonic()
    try:
        resp = adapter.session.get(
            homepage,
            headers={
                **adapter.settings.DEFAULT_HEADERS,
                "Referer": homepage,
            },
            timeout=_PROBE_TIMEOUT,
        )
    except Exception as exc:
        return SourceHealth(
            source_id=source_id,
            status="down",
            latency_ms=(time.monotonic() - start) * 1000,
            message=str(exc)[:80],
        )

    latency_ms = (time.monotonic() - start) * 1000
    status, message = _classify(resp.status_code, latency_ms)
    return SourceHealth(
        source_id=source_id,
        status=status,
        latency_ms=latency_ms,
        message=message,
    )


class HealthChecker:
    """Probes every registered source concurrently."""

    def __init__(self, registry: AdapterRegistry | None = None) -> None:
        self.registry = registry or AdapterRegistry()

    def _probe(self, source_id: str) -> SourceHealth:
        try:
            adapter = self.registry.get(source_id)
        except Exception as exc:
            return SourceHealth(
                source_id=source_id,
                status="down",
                latency_ms=0.0,
                message=f"Failed to load adapter: {exc}",
            )
        if not isinstance(adapter, BaseScraper):
            return SourceHealth(
                source_id=source_id,
                status="ok",
                latency_ms=0.0,
                message="custom adapter, not probed",
            )
        return probe_adapter(source_id, adapter)

    async def check_all(self) -> list[SourceHealth]:
        """Probe every source; results in source-id order."""
        results: list[SourceHealth] = list(
            await asyncio.gather(
                *(
                    asyncio.to_thread(self._probe, source_id)
                    for source_id in self.registry.source_ids()
                )
            )
        )
        for r in results:
            logger.info(
                "Health check %s: %s (%.0fms) %s",
                r.source_id,
                r.status,
                r.latency_ms,
                r.message,
            )
        return results
