# src/services/price_monitor.py

"""Periodic evaluation of price watches against the freshest prices."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from src.config.settings import Settings
from src.models.comparison import Snapshot
from src.models.product import CatalogProduct
from src.models.quote import Availability
from src.models.watch import (
    NotificationEvent,
    Watch,
    WatchKind,
    WatchState,
    utcnow,
)
from src.services.notifier import NotificationDispatcher
from src.services.scheduler import OrchestratorState
from src.storage.catalog_store import CatalogStore
from src.storage.history_store import HistoryStore

logger = logging.getLogger("price_watch.monitor")


@dataclass
class EvaluationSummary:
    """Counts from one ``evaluate_all`` cycle."""

    checked: int = 0
    triggered: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass(frozen=True)
class PricePoint:
    """Resolved current price and stock flag for one product."""

    price: Decimal
    availability: Availability
    from_snapshot: bool


def resolve_current_price(
    snapshot: Snapshot | None,
    product: CatalogProduct | None,
) -> PricePoint | None:
    """Snapshot's lowest quote first, catalog baseline second.

    Returns None when neither source has a price.
    """
    if snapshot is not None and snapshot.summary.lowest is not None:
        return PricePoint(
            price=snapshot.summary.lowest,
            availability=snapshot.result.availability(),
            from_snapshot=True,
        )
    if product is not None and product.baseline_price is not None:
        return PricePoint(
            price=product.baseline_price,
            availability=Availability.UNKNOWN,
            from_snapshot=False,
        )
    return None


def should_trigger(watch: Watch, point: PricePoint) -> bool:
    """Trigger predicate for an ``active`` watch."""
    if watch.state is not WatchState.ACTIVE:
        return False

    if watch.kind is WatchKind.ABSOLUTE_DROP:
        return (
            watch.target_price is not None
            and point.price <= watch.target_price
        )

    if watch.kind is WatchKind.PERCENTAGE_DROP:
        baseline = watch.baseline_price
        if baseline is None or baseline <= 0:
            return False
        if watch.threshold_percent is None:
            return False
        dropped = (baseline - point.price) / baseline * 100
        return dropped >= watch.threshold_percent

    if watch.kind is WatchKind.RESTOCK:
        return (
            point.from_snapshot
            and point.availability is Availability.IN_STOCK
            and watch.last_availability is not Availability.IN_STOCK
        )

    return False


class PriceMonitor:
    """Evaluates active watches on its own timer.

    Reads only what the scheduler has persisted; never fetches.  An
    evaluation lock keeps scheduled and on-demand checks from running
    side by side, and the trigger commit is conditional on the stored
    watch still being ``active``, so each drop yields one event.
    """

    def __init__(
        self,
        catalog: CatalogStore,
        store: HistoryStore,
        dispatcher: NotificationDispatcher | None = None,
        state: OrchestratorState | None = None,
        interval: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.dispatcher = dispatcher
        self.state = state or OrchestratorState()
        self.interval = interval or Settings.EVALUATION_INTERVAL
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._loop_task: asyncio.Task[None] | None = None
        self._in_cycle = False
        self.last_check_at: datetime | None = None
        self.last_summary: EvaluationSummary | None = None

    # ── Evaluation ───────────────────────────────────────

    def _evaluate_sync(self, watch: Watch) -> NotificationEvent | None:
        if watch.state is not WatchState.ACTIVE:
            logger.debug(
                "Watch %s is %s, not evaluated", watch.id, watch.state.value,
            )
            return None

        now = self._clock()
        snapshot = self.store.latest(watch.product_id)
        product = self.catalog.find_product(watch.product_id)
        point = resolve_current_price(snapshot, product)
        if point is None:
            logger.warning(
                "No current price for product %s, skipping watch %s",
                watch.product_id,
                watch.id,
            )
            self.catalog.record_check(watch.id, now)
            return None

        logger.debug(
            "Watch %s (%s) on %s: current %s",
            watch.id,
            watch.kind.value,
            watch.product_id,
            point.price,
        )

        if not should_trigger(watch, point):
            self.catalog.record_check(
                watch.id,
                now,
                point.availability if point.from_snapshot else None,
            )
            return None

        committed = self.catalog.commit_trigger(watch.id, point.price, now)
        if committed is None:
            logger.info(
                "Watch %s no longer active, trigger skipped", watch.id,
            )
            return None
        if point.from_snapshot:
            self.catalog.record_check(watch.id, now, point.availability)

        event = NotificationEvent.for_trigger(committed, point.price, now)
        logger.info(
            "Watch %s triggered: %s at %s (savings %s)",
            watch.id,
            watch.product_id,
            point.price,
            event.savings,
        )
        return event

    def _hand_off(self, event: NotificationEvent) -> None:
        if self.dispatcher is None:
            logger.info("No dispatcher; event %s not delivered", event.id)
            return
        self.dispatcher.enqueue(event)

    async def _evaluate_and_hand_off(
        self, watch: Watch,
    ) -> NotificationEvent | None:
        event = await asyncio.to_thread(self._evaluate_sync, watch)
        if event is not None:
            self._hand_off(event)
        return event

    async def _evaluate_shielded(
        self, watch: Watch,
    ) -> NotificationEvent | None:
        # A committed trigger must reach the dispatcher even if the
        # caller is cancelled while the worker thread is running
        return await asyncio.shield(self._evaluate_and_hand_off(watch))

    async def evaluate_one(self, watch: Watch) -> NotificationEvent | None:
        """Evaluate one watch; the event if it fired, else None."""
        async with self._lock:
            return await self._evaluate_shielded(watch)

    async def check_watch(self, watch_id: str) -> NotificationEvent | None:
        """Reload a watch by id and evaluate it.

        Raises:
            WatchNotFoundError: unknown watch id.
        """
        watch = await asyncio.to_thread(self.catalog.get_watch, watch_id)
        return await self.evaluate_one(watch)

    async def evaluate_all(self) -> EvaluationSummary:
        """Evaluate every active watch once; failures are isolated.

        Each event is handed to the dispatcher as soon as its trigger is
        committed, not at the end of the cycle.
        """
        summary = EvaluationSummary()
        async with self._lock:
            watches = await asyncio.to_thread(
                self.catalog.list_active_watches
            )
            if not watches:
                logger.info("No active watches to check")
            for watch in watches:
                try:
                    event = await self._evaluate_shielded(watch)
                except Exception as exc:
                    summary.errors += 1
                    logger.error(
                        "Error checking watch %s: %s",
                        watch.id,
                        exc,
                        exc_info=True,
                    )
                    continue
                summary.checked += 1
                if event is not None:
                    summary.triggered += 1
            self.last_check_at = self._clock()
            self.last_summary = summary

        logger.info(
            "Watch check complete: %d checked, %d triggered, %d errors",
            summary.checked,
            summary.triggered,
            summary.errors,
        )
        return summary

    # ── Timer ────────────────────────────────────────────

    async def on_evaluation_tick(self) -> EvaluationSummary:
        """One timer tick: a full evaluation cycle, never raising."""
        try:
            return await self.evaluate_all()
        except Exception as exc:
            logger.error("Evaluation cycle failed: %s", exc, exc_info=True)
            return EvaluationSummary(errors=1)

    async def _loop(self) -> None:
        while self.state.monitoring:
            self._in_cycle = True
            try:
                await self.on_evaluation_tick()
            finally:
                self._in_cycle = False
            if not self.state.monitoring:
                break
            await self._sleep(self.interval)

    def start(self) -> bool:
        """Start the evaluation loop; False if already running."""
        if self.state.monitoring:
            logger.warning("Price monitoring is already running")
            return False
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("Previous evaluation cycle still finishing")
            return False
        self.state.monitoring = True
        self._loop_task = asyncio.create_task(
            self._loop(), name="price-monitor"
        )
        logger.info(
            "Price monitoring started, checking every %.0fs", self.interval,
        )
        return True

    def stop(self) -> None:
        """Stop the evaluation loop.

        A cycle in progress runs to the end so every trigger it commits
        is handed off; only the wait between cycles is cancelled.
        """
        if not self.state.monitoring:
            return
        self.state.monitoring = False
        task = self._loop_task
        if task is not None and not self._in_cycle:
            task.cancel()
        logger.info("Price monitoring stopped")

    async def wait_idle(self) -> None:
        """Wait until the loop task has ended."""
        task = self._loop_task
        if task is None:
            return
        await asyncio.wait({task})
        if self._loop_task is task:
            self._loop_task = None

    # ── Stats ────────────────────────────────────────────

    def monitoring_stats(self) -> dict[str, object]:
        """Counts of watches by state plus loop status."""
        watches = self.catalog.list_watches()
        return {
            "total_watches": len(watches),
            "active_watches": sum(
                1 for w in watches if w.state is WatchState.ACTIVE
            ),
            "triggered_watches": sum(
                1 for w in watches if w.state is WatchState.TRIGGERED
            ),
            "paused_watches": sum(
                1 for w in watches if w.state is WatchState.PAUSED
            ),
            "is_monitoring": self.state.monitoring,
            "interval_seconds": self.interval,
            "last_check_at": (
                self.last_check_at.isoformat()
                if self.last_check_at
                else None
            ),
        }

    def watch_stats(self, owner_id: str) -> dict[str, object]:
        """Per-owner counts and total realised savings."""
        watches = self.catalog.list_watches(owner_id=owner_id)
        savings = Decimal("0")
        for w in watches:
            if (
                w.state is WatchState.TRIGGERED
                and w.triggered_price is not None
                and w.baseline_price is not None
                and w.baseline_price > w.triggered_price
            ):
                savings += w.baseline_price - w.triggered_price
        return {
            "total": len(watches),
            "active": sum(1 for w in watches if w.is_active),
            "triggered": sum(
                1 for w in watches if w.state is WatchState.TRIGGERED
            ),
            "paused": sum(
                1 for w in watches if w.state is WatchState.PAUSED
            ),
            "total_savings": savings,
        }
