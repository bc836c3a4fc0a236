# src/services/fetch_coordinator.py

"""Rate-limited, retry-aware multi-source price fetching."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from src.config.settings import Settings
from src.errors import FetchError
from src.models.comparison import ComparisonResult
from src.models.quote import Quote, RawQuote
from src.models.watch import utcnow
from src.scrapers.registry import AdapterRegistry, FetchAdapter
from src.services.rate_limiter import SourceRateLimiter

logger = logging.getLogger("price_watch.coordinator")


class FetchCoordinator:
    """Fans one product out to its sources and collects the quotes.

    Three limits apply to every fetch: a per-source rate slot, a
    global ceiling on in-flight fetches shared by every caller of this
    instance, and a per-call timeout.  Failed sources are retried a
    fixed number of times and then reported in
    ``ComparisonResult.failed_sources``; they never abort the others.
    Nothing is persisted here.
    """

    def __init__(
        self,
        registry: AdapterRegistry | None = None,
        limiter: SourceRateLimiter | None = None,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = Settings()
        self.registry = registry or AdapterRegistry()
        self.limiter = limiter or SourceRateLimiter(
            self.settings.RATE_LIMIT_INTERVAL
        )
        self.max_concurrent = (
            max_concurrent or self.settings.MAX_CONCURRENT_FETCHES
        )
        self.max_retries = max(
            1, max_retries or self.settings.MAX_RETRIES
        )
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else self.settings.RETRY_DELAY
        )
        self.timeout = timeout or float(self.settings.REQUEST_TIMEOUT)
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._in_flight = 0
        self.peak_in_flight = 0
        self._stragglers: dict[str, "asyncio.Future[RawQuote]"] = {}

    @property
    def in_flight(self) -> int:
        """Adapter calls whose worker thread has not finished yet."""
        return self._in_flight

    # ── Private helpers ──────────────────────────────────

    def _release_slot(self, job: "asyncio.Future[RawQuote]") -> None:
        """Give the slot back once the worker thread has really ended."""
        self._in_flight -= 1
        self._semaphore.release()
        if not job.cancelled() and job.exception() is not None:
            # Abandoned after a timeout; nobody else will read it
            logger.debug("Late fetch failure: %s", job.exception())

    async def _wait_for_straggler(self, source: str) -> None:
        """Never overlap a new request with a timed-out one to *source*."""
        straggler = self._stragglers.get(source)
        if straggler is None or straggler.done():
            return
        logger.info("[%s] Waiting for timed-out fetch to finish", source)
        await asyncio.wait({straggler})

    async def _call_adapter(
        self, source: str, adapter: FetchAdapter, url: str,
    ) -> RawQuote:
        """Rate token, slot, then the adapter call under the timeout."""
        await self._wait_for_straggler(source)
        # Token before slot so a throttled source does not park a slot
        await self.limiter.acquire(source)
        await self._semaphore.acquire()
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

        loop = asyncio.get_running_loop()
        job = loop.run_in_executor(None, adapter.fetch_quote, url)
        job.add_done_callback(self._release_slot)
        try:
            return await asyncio.wait_for(
                asyncio.shield(job), timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self._stragglers[source] = job
            raise

    async def _attempt(
        self,
        source: str,
        adapter: FetchAdapter,
        product_id: str,
        url: str,
    ) -> Quote | None:
        """One rate-limited, time-boxed fetch; None on failure."""
        try:
            raw = await self._call_adapter(source, adapter, url)
        except asyncio.TimeoutError:
            logger.warning(
                "[%s] Fetch timed out after %.1fs: %s",
                source,
                self.timeout,
                url,
            )
            return None
        except FetchError as exc:
            logger.warning("[%s] Fetch failed: %s", source, exc)
            return None
        except Exception as exc:
            logger.error(
                "[%s] Adapter error for %s: %s",
                source,
                url,
                exc,
                exc_info=True,
            )
            return None

        return Quote.from_raw(
            raw,
            source=source,
            product_id=product_id,
            url=url,
            observed_at=self._clock(),
        )

    async def _fetch_with_retry(
        self,
        source: str,
        adapter: FetchAdapter,
        product_id: str,
        url: str,
    ) -> Quote | None:
        """Retry *source* with a fixed delay until it yields a quote."""
        for attempt in range(1, self.max_retries + 1):
            quote = await self._attempt(source, adapter, product_id, url)
            if quote is not None:
                logger.info(
                    "[%s] %s priced at %s %s (attempt %d)",
                    source,
                    product_id,
                    quote.currency,
                    quote.price,
                    attempt,
                )
                return quote
            if attempt < self.max_retries:
                logger.info(
                    "[%s] Retrying %s (attempt %d/%d) in %.1fs",
                    source,
                    product_id,
                    attempt + 1,
                    self.max_retries,
                    self.retry_delay,
                )
                await self._sleep(self.retry_delay)

        logger.error(
            "[%s] Giving up on %s after %d attempts",
            source,
            product_id,
            self.max_retries,
        )
        return None

    # ── Public API ───────────────────────────────────────

    async def fetch_one(
        self, source: str, url: str, product_id: str = "",
    ) -> Quote:
        """Single attempt at one URL through one adapter, no retries.

        Obeys the same rate slot, ceiling and timeout as a sweep.

        Raises:
            FetchError: unknown source, timeout, or the adapter's own
                failure.
        """
        adapter = self.registry.get(source)
        if adapter is None:
            raise FetchError(source, url, "no adapter for this source")
        try:
            raw = await self._call_adapter(source, adapter, url)
        except asyncio.TimeoutError:
            raise FetchError(
                source, url, f"timed out after {self.timeout:.1f}s"
            ) from None
        except FetchError:
            raise
        except Exception as exc:
            logger.error(
                "[%s] Adapter error for %s: %s",
                source,
                url,
                exc,
                exc_info=True,
            )
            raise FetchError(source, url, str(exc)) from exc
        return Quote.from_raw(
            raw,
            source=source,
            product_id=product_id,
            url=url,
            observed_at=self._clock(),
        )

    async def refresh_product(
        self,
        product_id: str,
        source_urls: dict[str, str],
    ) -> ComparisonResult:
        """Collect quotes for one product from every configured source.

        Sources with a blank URL or no registered adapter are skipped.
        Returns an empty result (not an error) when nothing succeeds.
        """
        targets: list[tuple[str, FetchAdapter, str]] = []
        for source, url in sorted(source_urls.items()):
            if not url or not url.strip():
                continue
            adapter = self.registry.get(source)
            if adapter is None:
                logger.warning(
                    "Skipping %s for %s: no adapter", source, product_id,
                )
                continue
            targets.append((source, adapter, url.strip()))

        if not targets:
            logger.info("No configured sources for %s", product_id)
            return ComparisonResult.from_quotes(
                product_id, self._clock(), []
            )

        outcomes = await asyncio.gather(
            *(
                self._fetch_with_retry(source, adapter, product_id, url)
                for source, adapter, url in targets
            ),
            return_exceptions=True,
        )

        quotes: list[Quote] = []
        failed: list[str] = []
        for (source, _adapter, _url), outcome in zip(targets, outcomes):
            if isinstance(outcome, Quote):
                quotes.append(outcome)
            else:
                if isinstance(outcome, BaseException):
                    logger.error(
                        "[%s] Unexpected failure for %s: %s",
                        source,
                        product_id,
                        outcome,
                        exc_info=outcome,
                    )
                failed.append(source)

        result = ComparisonResult.from_quotes(
            product_id, self._clock(), quotes, failed
        )
        logger.info(
            "Price comparison for %s: %d/%d sources, lowest=%s",
            product_id,
            len(quotes),
            len(targets),
            result.lowest_price,
        )
        return result
