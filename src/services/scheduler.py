# src/services/scheduler.py

"""Cron-driven refresh sweeps with single-flight guards."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo

from croniter import croniter

from src.config.settings import Settings
from src.errors import StoreError
from src.models.comparison import ComparisonResult
from src.models.product import CatalogProduct
from src.models.watch import new_id, utcnow
from src.services.fetch_coordinator import FetchCoordinator
from src.storage.catalog_store import CatalogStore
from src.storage.history_store import HistoryStore

logger = logging.getLogger("price_watch.scheduler")

FULL_SWEEP = "full"
PRIORITY_SWEEP = "priority"


class SweepState(str, Enum):
    """Sweep lifecycle: ``idle -> running -> idle``."""

    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SweepRun:
    """Bookkeeping for one pass over a product set."""

    kind: str
    trigger: str
    started_at: datetime
    id: str = field(default_factory=new_id)
    status: str = "running"
    finished_at: datetime | None = None
    product_count: int = 0
    refreshed: int = 0
    empty: int = 0
    failed: int = 0
    stop_requested: bool = False

    def to_dict(self) -> dict[str, object]:
        """Serialise to JSON-safe primitives."""
        return {
            "id": self.id,
            "kind": self.kind,
            "trigger": self.trigger,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": (
                self.finished_at.isoformat() if self.finished_at else None
            ),
            "product_count": self.product_count,
            "refreshed": self.refreshed,
            "empty": self.empty,
            "failed": self.failed,
        }


@dataclass
class SweepOutcome:
    """What a sweep request produced: a new run or the one in flight."""

    run: SweepRun
    already_running: bool = False


@dataclass
class Cadence:
    """One cron-scheduled sweep."""

    name: str
    expression: str
    next_fire_at: datetime


class OrchestratorState:
    """Shared, explicitly owned state of the scheduling and monitor loops.

    Holds the per-kind sweep guards, the last finished runs, and which
    cadences are armed.  Single-flight checks happen here without any
    ``await`` between test and set, so they are atomic on the event loop.
    """

    def __init__(self) -> None:
        self.started = False
        self.monitoring = False
        self.active_cadences: set[str] = set()
        self._current: dict[str, SweepRun] = {}
        self._last: dict[str, SweepRun] = {}

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        """Disarm every cadence and ask scheduled runs to wind down."""
        self.started = False
        self.active_cadences.clear()
        for run in self._current.values():
            if run.trigger == "schedule":
                run.stop_requested = True

    def sweep_state(self, kind: str = FULL_SWEEP) -> SweepState:
        if kind in self._current:
            return SweepState.RUNNING
        return SweepState.IDLE

    def is_running(self, kind: str = FULL_SWEEP) -> bool:
        return self.sweep_state(kind) is SweepState.RUNNING

    def current_run(self, kind: str = FULL_SWEEP) -> SweepRun | None:
        return self._current.get(kind)

    def last_run(self, kind: str = FULL_SWEEP) -> SweepRun | None:
        return self._last.get(kind)

    def try_begin(self, run: SweepRun) -> SweepOutcome:
        """Claim the guard for ``run.kind`` or report the run holding it."""
        existing = self._current.get(run.kind)
        if existing is not None:
            return SweepOutcome(run=existing, already_running=True)
        self._current[run.kind] = run
        return SweepOutcome(run=run)

    def finish(self, run: SweepRun) -> None:
        if self._current.get(run.kind) is run:
            del self._current[run.kind]
        self._last[run.kind] = run


class RefreshScheduler:
    """Drives full and priority sweeps plus on-demand refreshes.

    Cadences fire from :meth:`on_sweep_tick`; the background loop only
    calls it on a fixed tick, so tests can drive it with any clock.
    Sweeps run as their own tasks.  Stopping disarms the cadences and
    lets any in-flight product refresh finish.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        store: HistoryStore,
        coordinator: FetchCoordinator,
        state: OrchestratorState | None = None,
        full_cron: str | None = None,
        priority_cron: str | None = None,
        politeness_delay: float | None = None,
        priority_limit: int | None = None,
        tz: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = Settings()
        self.catalog = catalog
        self.store = store
        self.coordinator = coordinator
        self.state = state or OrchestratorState()
        self.full_cron = full_cron or self.settings.FULL_SWEEP_CRON
        self.priority_cron = (
            priority_cron or self.settings.PRIORITY_SWEEP_CRON
        )
        for expr in (self.full_cron, self.priority_cron):
            if not croniter.is_valid(expr):
                raise ValueError(f"Invalid cron expression: {expr!r}")
        self.politeness_delay = (
            politeness_delay
            if politeness_delay is not None
            else self.settings.SWEEP_POLITENESS_DELAY
        )
        self.priority_limit = (
            priority_limit or self.settings.PRIORITY_SWEEP_LIMIT
        )
        self.tz = ZoneInfo(tz or self.settings.SCHEDULER_TIMEZONE)
        self._clock = clock
        self._sleep = sleep
        self._cadences: dict[str, Cadence] = {}
        self._product_locks: dict[str, asyncio.Lock] = {}
        self._sweep_tasks: set[asyncio.Task[SweepOutcome]] = set()
        self._loop_task: asyncio.Task[None] | None = None

    # ── Cadences ─────────────────────────────────────────

    def _next_fire(self, expression: str, after: datetime) -> datetime:
        base = after.astimezone(self.tz)
        nxt: datetime = croniter(expression, base).get_next(datetime)
        return nxt

    def start(self, now: datetime | None = None) -> bool:
        """Arm both cadences; False (no-op) if already armed."""
        if self._cadences:
            logger.info("Scheduled sweeps already running")
            return False
        now = now or self._clock()
        for name, expr in (
            (FULL_SWEEP, self.full_cron),
            (PRIORITY_SWEEP, self.priority_cron),
        ):
            self._cadences[name] = Cadence(
                name=name,
                expression=expr,
                next_fire_at=self._next_fire(expr, now),
            )
            self.state.active_cadences.add(name)
        self.state.start()
        logger.info(
            "Scheduled sweeps started: full '%s' (next %s), "
            "priority '%s' (next %s)",
            self.full_cron,
            self._cadences[FULL_SWEEP].next_fire_at.isoformat(),
            self.priority_cron,
            self._cadences[PRIORITY_SWEEP].next_fire_at.isoformat(),
        )
        return True

    def stop(self) -> None:
        """Disarm cadences and stop the tick loop; in-flight work finishes."""
        for name in list(self._cadences):
            logger.info("Stopped %s sweep cadence", name)
        self._cadences.clear()
        self.state.stop()
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

    def on_sweep_tick(self, now: datetime | None = None) -> list[str]:
        """Fire every armed cadence that is due at *now*.

        Each due cadence is rescheduled to its next occurrence after
        *now* (missed occurrences are not replayed) and its sweep is
        spawned as a task.  Returns the names of the cadences fired.
        """
        now = now or self._clock()
        fired: list[str] = []
        for cadence in list(self._cadences.values()):
            if now < cadence.next_fire_at:
                continue
            cadence.next_fire_at = self._next_fire(cadence.expression, now)
            fired.append(cadence.name)
            if cadence.name == FULL_SWEEP:
                coro = self._full_sweep(trigger="schedule")
            else:
                coro = self._priority_sweep(trigger="schedule")
            task = asyncio.create_task(coro, name=f"{cadence.name}-sweep")
            self._sweep_tasks.add(task)
            task.add_done_callback(self._sweep_tasks.discard)
            logger.info(
                "%s sweep fired; next at %s",
                cadence.name,
                cadence.next_fire_at.isoformat(),
            )
        return fired

    async def _tick_loop(self, tick_seconds: float) -> None:
        while self.state.started:
            try:
                self.on_sweep_tick(self._clock())
            except Exception as exc:
                logger.error("Sweep tick failed: %s", exc, exc_info=True)
            await self._sleep(tick_seconds)

    def start_loop(self, tick_seconds: float | None = None) -> bool:
        """Arm cadences and start the background tick loop."""
        armed = self.start()
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(
                self._tick_loop(
                    tick_seconds or self.settings.SCHEDULER_TICK_SECONDS
                ),
                name="sweep-scheduler",
            )
        return armed

    async def wait_idle(self) -> None:
        """Wait for every spawned sweep task to finish."""
        while self._sweep_tasks:
            await asyncio.gather(
                *list(self._sweep_tasks), return_exceptions=True
            )

    # ── Refresh primitives ───────────────────────────────

    def _lock_for(self, product_id: str) -> asyncio.Lock:
        lock = self._product_locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._product_locks[product_id] = lock
        return lock

    async def _refresh_and_record(
        self, product: CatalogProduct,
    ) -> ComparisonResult:
        """Fetch one product and append non-empty results.

        Fetch and append for the same product never overlap.

        Raises:
            StoreError: the append did not commit.
        """
        async with self._lock_for(product.id):
            result = await self.coordinator.refresh_product(
                product.id, product.configured_sources
            )
            if result.is_empty:
                logger.warning(
                    "No current prices found for %s (%s)",
                    product.id,
                    product.name,
                )
                return result
            await asyncio.to_thread(self.store.append, product.id, result)
        return result

    async def refresh_one(self, product_id: str) -> ComparisonResult:
        """On-demand refresh of one product, outside any cadence.

        Raises:
            ProductNotFoundError: unknown product id.
            StoreError: the refresh did not commit.
        """
        product = await asyncio.to_thread(
            self.catalog.get_product, product_id
        )
        logger.info("On-demand refresh of %s", product_id)
        return await self._refresh_and_record(product)

    async def _sweep(
        self,
        kind: str,
        trigger: str,
        load: Callable[[], list[CatalogProduct]],
    ) -> SweepOutcome:
        outcome = self.state.try_begin(
            SweepRun(kind=kind, trigger=trigger, started_at=self._clock())
        )
        if outcome.already_running:
            logger.warning(
                "%s sweep already in progress (run %s), skipping",
                kind,
                outcome.run.id,
            )
            return outcome

        run = outcome.run
        try:
            products = await asyncio.to_thread(load)
            products = [p for p in products if p.configured_sources]
            run.product_count = len(products)
            logger.info(
                "Starting %s sweep %s over %d products",
                kind,
                run.id,
                len(products),
            )
            for index, product in enumerate(products):
                if run.stop_requested:
                    logger.info("%s sweep %s stopped early", kind, run.id)
                    run.status = "stopped"
                    break
                if index:
                    await self._sleep(self.politeness_delay)
                try:
                    result = await self._refresh_and_record(product)
                except StoreError as exc:
                    run.failed += 1
                    logger.error(
                        "Refresh of %s did not commit: %s", product.id, exc,
                    )
                    continue
                except Exception as exc:
                    run.failed += 1
                    logger.error(
                        "Refresh of %s failed: %s",
                        product.id,
                        exc,
                        exc_info=True,
                    )
                    continue
                if result.is_empty:
                    run.empty += 1
                else:
                    run.refreshed += 1
            if run.status == "running":
                run.status = "completed"
        except Exception:
            run.status = "failed"
            logger.error("%s sweep %s aborted", kind, run.id, exc_info=True)
            raise
        finally:
            run.finished_at = self._clock()
            self.state.finish(run)
            logger.info(
                "%s sweep %s %s: %d refreshed, %d empty, %d failed",
                kind,
                run.id,
                run.status,
                run.refreshed,
                run.empty,
                run.failed,
            )
        return outcome

    async def _full_sweep(self, trigger: str) -> SweepOutcome:
        return await self._sweep(
            FULL_SWEEP, trigger, self.catalog.list_products
        )

    async def _priority_sweep(self, trigger: str) -> SweepOutcome:
        def load() -> list[CatalogProduct]:
            featured = self.catalog.list_products(featured_only=True)
            return featured[: self.priority_limit]

        return await self._sweep(PRIORITY_SWEEP, trigger, load)

    async def refresh_all(self) -> SweepOutcome:
        """On-demand full sweep; reports the in-flight run if one exists."""
        return await self._full_sweep(trigger="manual")

    async def refresh_featured(self) -> SweepOutcome:
        """On-demand priority-subset sweep."""
        return await self._priority_sweep(trigger="manual")

    # ── Status ───────────────────────────────────────────

    def status(self) -> dict[str, object]:
        """Running flag, armed cadences, and current / last runs."""
        current = self.state.current_run(FULL_SWEEP)
        last = self.state.last_run(FULL_SWEEP)
        priority = self.state.current_run(PRIORITY_SWEEP)
        return {
            "is_running": self.state.is_running(FULL_SWEEP),
            "priority_running": priority is not None,
            "scheduled": bool(self._cadences),
            "active_cadences": [
                {
                    "name": c.name,
                    "expression": c.expression,
                    "next_fire_at": c.next_fire_at.isoformat(),
                }
                for c in sorted(
                    self._cadences.values(), key=lambda c: c.name
                )
            ],
            "current_run": current.to_dict() if current else None,
            "last_run": last.to_dict() if last else None,
        }
