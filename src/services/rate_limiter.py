# src/services/rate_limiter.py

"""Per-source fixed-interval request limiter."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

logger = logging.getLogger("price_watch.rate_limiter")


class SourceRateLimiter:
    """Allows at most one request per source per ``interval`` seconds.

    Callers reserve the next free slot for their source and sleep
    until it arrives.  Reservations happen without awaiting, so two
    coroutines can never claim the same slot.  Sources are independent.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._next_slot: dict[str, float] = {}

    async def acquire(self, source: str) -> float:
        """Wait for the next slot for *source*; return seconds waited."""
        now = self._clock()
        slot = max(now, self._next_slot.get(source, now))
        self._next_slot[source] = slot + self.interval
        wait = slot - now
        if wait > 0:
            logger.debug(
                "[%s] Rate limited, waiting %.2fs", source, wait,
            )
            await self._sleep(wait)
        return wait

    def seconds_until_free(self, source: str) -> float:
        """How long a new request for *source* would wait right now."""
        return max(0.0, self._next_slot.get(source, 0.0) - self._clock())
