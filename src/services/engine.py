# src/services/engine.py

"""Facade wiring the fetch, history, scheduling and monitoring layers."""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from src.config.settings import Settings
from src.errors import FetchError
from src.models.comparison import ComparisonResult, HistoryEntry
from src.models.product import CatalogProduct
from src.models.quote import Quote
from src.models.watch import (
    NotificationChannels,
    NotificationEvent,
    Watch,
    WatchKind,
    WatchState,
    utcnow,
)
from src.services.fetch_coordinator import FetchCoordinator
from src.services.notifier import (
    EmailChannel,
    InAppChannel,
    NotificationDispatcher,
    PushChannel,
)
from src.services.price_monitor import (
    EvaluationSummary,
    PriceMonitor,
    resolve_current_price,
)
from src.services.scheduler import (
    OrchestratorState,
    RefreshScheduler,
    SweepOutcome,
)
from src.storage.catalog_store import CatalogStore
from src.storage.history_store import HistoryStore

logger = logging.getLogger("price_watch.engine")

NO_PRICES_MESSAGE = "no current prices found"


@dataclass
class RefreshReport:
    """User-facing outcome of an on-demand product refresh."""

    product_id: str
    result: ComparisonResult
    message: str

    @property
    def found(self) -> bool:
        return not self.result.is_empty


@dataclass
class SourceCheck:
    """Outcome of fetching one URL through one adapter."""

    source: str
    url: str
    quote: Quote | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.quote is not None


class PriceWatchEngine:
    """Owns the shared state and exposes the engine's operations."""

    def __init__(
        self,
        catalog: CatalogStore | None = None,
        store: HistoryStore | None = None,
        coordinator: FetchCoordinator | None = None,
        dispatcher: NotificationDispatcher | None = None,
        state: OrchestratorState | None = None,
        scheduler: RefreshScheduler | None = None,
        monitor: PriceMonitor | None = None,
    ) -> None:
        self.catalog = catalog or CatalogStore()
        self.store = store or HistoryStore()
        self.state = state or OrchestratorState()
        self.coordinator = coordinator or FetchCoordinator()
        self.dispatcher = dispatcher or NotificationDispatcher(
            [EmailChannel(), PushChannel(), InAppChannel(self.catalog)]
        )
        self.scheduler = scheduler or RefreshScheduler(
            self.catalog, self.store, self.coordinator, state=self.state,
        )
        self.monitor = monitor or PriceMonitor(
            self.catalog,
            self.store,
            dispatcher=self.dispatcher,
            state=self.state,
        )

    # ── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        """Start sweeps, the monitor loop and notification delivery."""
        self.dispatcher.start()
        self.start_scheduled_sweeps()
        self.monitor.start()

    async def stop(self) -> None:
        """Stop both loops, let in-flight sweeps finish, flush events."""
        self.stop_scheduled_sweeps()
        self.monitor.stop()
        await self.monitor.wait_idle()
        await self.scheduler.wait_idle()
        await self.dispatcher.stop()

    def close(self) -> None:
        """Release database connections."""
        self.catalog.close()
        self.store.close()

    # ── Sweeps ───────────────────────────────────────────

    def start_scheduled_sweeps(self) -> bool:
        return self.scheduler.start_loop()

    def stop_scheduled_sweeps(self) -> None:
        self.scheduler.stop()

    async def refresh_product(self, product_id: str) -> RefreshReport:
        """Refresh one product now and report what was found."""
        result = await self.scheduler.refresh_one(product_id)
        if result.is_empty:
            message = NO_PRICES_MESSAGE
        else:
            message = (
                f"{result.summary.source_count} prices found, "
                f"lowest {result.summary.lowest}"
            )
        return RefreshReport(
            product_id=product_id, result=result, message=message,
        )

    async def refresh_all(self) -> SweepOutcome:
        return await self.scheduler.refresh_all()

    async def refresh_featured(self) -> SweepOutcome:
        """Priority sweep of featured products, outside the cron."""
        return await self.scheduler.refresh_featured()

    async def test_source(self, source: str, url: str) -> SourceCheck:
        """Fetch one URL through one adapter and report what came back.

        Nothing is persisted; adapter failures land in ``error``.
        """
        check = SourceCheck(source=source, url=url)
        try:
            check.quote = await self.coordinator.fetch_one(source, url)
        except FetchError as exc:
            check.error = exc.reason
        return check

    def get_sweep_status(self) -> dict[str, object]:
        status = self.scheduler.status()
        status["monitoring"] = self.state.monitoring
        return status

    async def get_price_history(
        self, product_id: str, days: float = 30,
    ) -> list[HistoryEntry]:
        return await asyncio.to_thread(
            self.store.history, product_id, days
        )

    # ── Watches ──────────────────────────────────────────

    async def check_all_watches(self) -> EvaluationSummary:
        summary = await self.monitor.evaluate_all()
        await self.dispatcher.drain()
        return summary

    async def check_watch(self, watch_id: str) -> NotificationEvent | None:
        event = await self.monitor.check_watch(watch_id)
        await self.dispatcher.drain()
        return event

    async def pause_watch(self, watch_id: str) -> Watch:
        return await asyncio.to_thread(
            self.catalog.set_watch_state,
            watch_id,
            WatchState.PAUSED,
            utcnow(),
        )

    async def reactivate_watch(self, watch_id: str) -> Watch:
        return await asyncio.to_thread(
            self.catalog.set_watch_state,
            watch_id,
            WatchState.ACTIVE,
            utcnow(),
        )

    async def create_watch(
        self,
        owner_id: str,
        product_id: str,
        kind: WatchKind,
        target_price: Decimal | None = None,
        threshold_percent: Decimal | None = None,
        channels: NotificationChannels | None = None,
        now: datetime | None = None,
    ) -> Watch:
        """Create a watch, capturing the baseline from the current price.

        Raises:
            ProductNotFoundError: unknown product.
            InvalidWatchError: parameters do not fit *kind*.
        """
        product = await asyncio.to_thread(
            self.catalog.get_product, product_id
        )
        snapshot = await asyncio.to_thread(self.store.latest, product_id)
        point = resolve_current_price(snapshot, product)
        baseline = point.price if point is not None else None
        at = now or utcnow()
        watch = Watch(
            owner_id=owner_id,
            product_id=product_id,
            product_name=product.name,
            kind=kind,
            baseline_price=baseline,
            target_price=target_price,
            threshold_percent=threshold_percent,
            channels=channels or NotificationChannels(),
            last_availability=(
                point.availability
                if point is not None and point.from_snapshot
                else None
            ),
            created_at=at,
            updated_at=at,
        )
        watch.validate()
        await asyncio.to_thread(self.catalog.save_watch, watch)
        logger.info(
            "Created %s watch %s for %s on %s",
            kind.value,
            watch.id,
            owner_id,
            product_id,
        )
        return watch

    async def update_watch(
        self,
        watch_id: str,
        target_price: Decimal | None = None,
        threshold_percent: Decimal | None = None,
        channels: NotificationChannels | None = None,
        now: datetime | None = None,
    ) -> Watch:
        """Change a watch's target, threshold or channels.

        Arguments left as None keep their stored value.  Trigger state
        is never touched, so a watch that fired stays fired until it is
        reactivated.

        Raises:
            WatchNotFoundError: unknown watch id.
            InvalidWatchError: the edited watch no longer fits its kind.
        """
        current = await asyncio.to_thread(self.catalog.get_watch, watch_id)
        edited = replace(
            current,
            target_price=(
                target_price
                if target_price is not None
                else current.target_price
            ),
            threshold_percent=(
                threshold_percent
                if threshold_percent is not None
                else current.threshold_percent
            ),
            channels=channels or current.channels,
        )
        edited.validate()
        stored = await asyncio.to_thread(
            self.catalog.update_watch_settings,
            watch_id,
            edited.target_price,
            edited.threshold_percent,
            edited.channels,
            now or utcnow(),
        )
        logger.info("Updated watch %s", watch_id)
        return stored

    async def list_watches(
        self,
        owner_id: str | None = None,
        state: WatchState | None = None,
    ) -> list[Watch]:
        return await asyncio.to_thread(
            self.catalog.list_watches, state, owner_id
        )

    async def get_watch_stats(self, owner_id: str) -> dict[str, object]:
        """Per-owner watch counts and realised savings."""
        return await asyncio.to_thread(self.monitor.watch_stats, owner_id)

    async def delete_watch(self, watch_id: str) -> None:
        await asyncio.to_thread(self.catalog.delete_watch, watch_id)

    async def delete_owner(self, owner_id: str) -> int:
        """Account cleanup: drop every watch the owner has."""
        return await asyncio.to_thread(
            self.catalog.delete_owner_watches, owner_id
        )

    # ── Inbox ────────────────────────────────────────────

    async def list_inbox(
        self, owner_id: str, unread_only: bool = False,
    ) -> list[dict[str, object]]:
        return await asyncio.to_thread(
            self.catalog.list_notifications, owner_id, unread_only
        )

    async def mark_read(self, notification_id: str) -> bool:
        return await asyncio.to_thread(
            self.catalog.mark_notification_read, notification_id
        )

    async def add_product(self, product: CatalogProduct) -> CatalogProduct:
        if not product.id or not product.name:
            raise ValueError("product needs an id and a name")
        await asyncio.to_thread(self.catalog.upsert_product, product)
        return product


def build_engine(settings: Settings | None = None) -> PriceWatchEngine:
    """Construct an engine on the configured database paths."""
    settings = settings or Settings()
    return PriceWatchEngine(
        catalog=CatalogStore(settings.CATALOG_DB_PATH),
        store=HistoryStore(settings.HISTORY_DB_PATH),
    )
