# src/scrapers/circuit_breaker.py

"""Per-source circuit breaker shared by all fetches of one adapter."""

import logging
import threading
import time
from collections.abc import Callable


class CircuitBreaker:
    """Trips after ``threshold`` consecutive failures.

    While tripped every call is refused until ``cooldown`` seconds have
    passed.  The first call after that is let through as a probe: success
    closes the breaker, another failure trips it again straight away.
    """

    def __init__(
        self,
        name: str,
        threshold: int,
        cooldown: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self.failures = 0
        self.tripped_at: float | None = None
        self.logger = logging.getLogger(f"price_watch.breaker.{name}")

    @property
    def is_open(self) -> bool:
        return self.tripped_at is not None

    @property
    def cooling_down(self) -> bool:
        """Tripped and still inside the cooldown; does not start a probe."""
        tripped_at = self.tripped_at
        return (
            tripped_at is not None
            and self._clock() - tripped_at < self.cooldown
        )

    def blocks(self) -> bool:
        """True when the next call must be refused."""
        with self._lock:
            if self.tripped_at is None:
                return False
            waited = self._clock() - self.tripped_at
            if waited < self.cooldown:
                return True
            # Half-open: one probe; a failure re-trips immediately
            self.tripped_at = None
            self.failures = max(self.failures, self.threshold - 1)
            self.logger.info("[%s] probing after %.0fs", self.name, waited)
            return False

    def record_success(self) -> None:
        with self._lock:
            if self.tripped_at is not None or self.failures:
                self.logger.debug("[%s] closed", self.name)
            self.failures = 0
            self.tripped_at = None

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            if self.failures >= self.threshold and self.tripped_at is None:
                self.tripped_at = self._clock()
                self.logger.error(
                    "[%s] tripped by %d failures in a row, pausing %.0fs",
                    self.name,
                    self.failures,
                    self.cooldown,
                )
