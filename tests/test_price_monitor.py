# tests/test_price_monitor.py

"""Tests for watch evaluation against persisted prices."""

import asyncio
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from src.models.comparison import ComparisonResult
from src.models.product import CatalogProduct
from src.models.quote import Availability, Quote
from src.models.watch import NotificationEvent, Watch, WatchKind, WatchState
from src.services.notifier import NotificationDispatcher
from src.services.price_monitor import (
    PriceMonitor,
    PricePoint,
    resolve_current_price,
    should_trigger,
)
from src.storage.catalog_store import CatalogStore
from src.storage.history_store import HistoryStore

_T0 = datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)


class RecordingChannel:
    """In-memory channel capturing delivered events."""

    name = "in_app"

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    def deliver(self, event: NotificationEvent) -> None:
        self.events.append(event)


def _point(price: str, in_stock: bool = True) -> PricePoint:
    return PricePoint(
        price=Decimal(price),
        availability=(
            Availability.IN_STOCK if in_stock else Availability.OUT_OF_STOCK
        ),
        from_snapshot=True,
    )


class TestShouldTrigger(unittest.TestCase):
    """Trigger predicate boundaries."""

    def test_percentage_drop_boundary(self) -> None:
        """Baseline $100 at 10% fires at $90.00, not at $90.01."""
        watch = Watch(
            owner_id="u",
            product_id="p",
            kind=WatchKind.PERCENTAGE_DROP,
            baseline_price=Decimal("100.00"),
            threshold_percent=Decimal("10"),
        )
        self.assertTrue(should_trigger(watch, _point("90.00")))
        self.assertTrue(should_trigger(watch, _point("89.99")))
        self.assertFalse(should_trigger(watch, _point("90.01")))

    def test_absolute_drop_boundary(self) -> None:
        """Target $50.00 fires at $50.00 and $49.99, not at $50.01."""
        watch = Watch(
            owner_id="u",
            product_id="p",
            kind=WatchKind.ABSOLUTE_DROP,
            target_price=Decimal("50.00"),
        )
        self.assertTrue(should_trigger(watch, _point("50.00")))
        self.assertTrue(should_trigger(watch, _point("49.99")))
        self.assertFalse(should_trigger(watch, _point("50.01")))

    def test_restock_needs_transition(self) -> None:
        watch = Watch(owner_id="u", product_id="p", kind=WatchKind.RESTOCK)
        self.assertTrue(should_trigger(watch, _point("10")))
        self.assertFalse(should_trigger(watch, _point("10", in_stock=False)))

        watch.last_availability = Availability.IN_STOCK
        self.assertFalse(should_trigger(watch, _point("10")))

    def test_restock_ignores_baseline_fallback(self) -> None:
        watch = Watch(owner_id="u", product_id="p", kind=WatchKind.RESTOCK)
        point = PricePoint(
            price=Decimal("10"),
            availability=Availability.IN_STOCK,
            from_snapshot=False,
        )
        self.assertFalse(should_trigger(watch, point))

    def test_non_active_never_triggers(self) -> None:
        for state in (WatchState.TRIGGERED, WatchState.PAUSED):
            with self.subTest(state=state):
                watch = Watch(
                    owner_id="u",
                    product_id="p",
                    kind=WatchKind.ABSOLUTE_DROP,
                    target_price=Decimal("50"),
                    state=state,
                )
                self.assertFalse(should_trigger(watch, _point("1")))


class TestResolveCurrentPrice(unittest.TestCase):
    """Snapshot first, catalog baseline second."""

    def test_no_price_anywhere(self) -> None:
        self.assertIsNone(resolve_current_price(None, None))
        self.assertIsNone(
            resolve_current_price(None, CatalogProduct(id="p", name="P"))
        )

    def test_baseline_fallback(self) -> None:
        point = resolve_current_price(
            None,
            CatalogProduct(id="p", name="P", baseline_price=Decimal("45")),
        )
        assert point is not None
        self.assertEqual(point.price, Decimal("45"))
        self.assertFalse(point.from_snapshot)


class TestPriceMonitor(unittest.IsolatedAsyncioTestCase):
    """End-to-end evaluation against real stores."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.TemporaryDirectory()
        base = Path(self.tmp_dir.name)
        self.catalog = CatalogStore(base / "catalog.db")
        self.store = HistoryStore(base / "history.db")
        self.channel = RecordingChannel()
        self.dispatcher = NotificationDispatcher([self.channel])
        self.now = _T0
        self.monitor = PriceMonitor(
            self.catalog,
            self.store,
            dispatcher=self.dispatcher,
            clock=lambda: self.now,
        )
        self.catalog.upsert_product(
            CatalogProduct(
                id="kettle",
                name="Kettle",
                source_urls={"a": "https://a/k", "b": "https://b/k"},
            )
        )

    def tearDown(self) -> None:
        self.catalog.close()
        self.store.close()
        self.tmp_dir.cleanup()

    def _prices(
        self,
        product_id: str,
        *prices: str,
        availability: Availability = Availability.IN_STOCK,
    ) -> None:
        """Record one refresh pass and advance the clock."""
        self.now += timedelta(minutes=15)
        quotes = [
            Quote(
                source=source,
                product_id=product_id,
                url=f"https://{source}/{product_id}",
                price=Decimal(price),
                observed_at=self.now,
                availability=availability,
            )
            for source, price in zip("ab", prices)
        ]
        self.store.append(
            product_id,
            ComparisonResult.from_quotes(product_id, self.now, quotes),
        )

    def _watch(self, **fields: object) -> Watch:
        values: dict[str, object] = {
            "owner_id": "shopper@example.com",
            "product_id": "kettle",
            "product_name": "Kettle",
            "kind": WatchKind.ABSOLUTE_DROP,
        }
        values.update(fields)
        watch = Watch(**values)  # type: ignore[arg-type]
        return self.catalog.save_watch(watch)

    async def test_drop_scenario(self) -> None:
        """$120 baseline, $100 target: 115 holds, 99 fires saving 21."""
        watch = self._watch(
            baseline_price=Decimal("120.00"),
            target_price=Decimal("100.00"),
        )

        self._prices("kettle", "115.00", "118.00")
        summary = await self.monitor.evaluate_all()
        self.assertEqual((summary.checked, summary.triggered), (1, 0))
        self.assertIs(
            self.catalog.get_watch(watch.id).state, WatchState.ACTIVE
        )

        self._prices("kettle", "99.00", "105.00")
        summary = await self.monitor.evaluate_all()
        await self.dispatcher.drain()

        self.assertEqual(summary.triggered, 1)
        stored = self.catalog.get_watch(watch.id)
        self.assertIs(stored.state, WatchState.TRIGGERED)
        self.assertEqual(stored.triggered_price, Decimal("99.00"))
        self.assertEqual(stored.triggered_at, self.now)
        self.assertEqual(len(self.channel.events), 1)
        self.assertEqual(self.channel.events[0].savings, Decimal("21.00"))

    async def test_triggered_watch_is_stable(self) -> None:
        """Repeated evaluation never rewrites the trigger."""
        watch = self._watch(target_price=Decimal("100"))
        self._prices("kettle", "99.00")
        first = await self.monitor.evaluate_one(watch)
        self.assertIsNotNone(first)
        fired = self.catalog.get_watch(watch.id)

        self._prices("kettle", "80.00")
        # Stale in-memory copy still says active; the commit guard holds
        self.assertIsNone(await self.monitor.evaluate_one(watch))
        self.assertIsNone(await self.monitor.check_watch(watch.id))
        await self.monitor.evaluate_all()

        again = self.catalog.get_watch(watch.id)
        self.assertEqual(again.triggered_price, fired.triggered_price)
        self.assertEqual(again.triggered_at, fired.triggered_at)
        self.assertEqual(again.trigger_count, 1)
        await self.dispatcher.drain()
        self.assertEqual(len(self.channel.events), 1)

    async def test_reactivated_watch_can_fire_again(self) -> None:
        watch = self._watch(target_price=Decimal("100"))
        self._prices("kettle", "99.00")
        await self.monitor.evaluate_all()
        self.catalog.set_watch_state(watch.id, WatchState.ACTIVE, self.now)

        self._prices("kettle", "95.00")
        await self.monitor.evaluate_all()

        again = self.catalog.get_watch(watch.id)
        self.assertEqual(again.triggered_price, Decimal("95.00"))
        self.assertEqual(again.trigger_count, 2)

    async def test_paused_watch_skipped(self) -> None:
        watch = self._watch(target_price=Decimal("100"))
        self.catalog.set_watch_state(watch.id, WatchState.PAUSED, self.now)
        self._prices("kettle", "10.00")

        summary = await self.monitor.evaluate_all()

        self.assertEqual(summary.checked, 0)
        self.assertIs(
            self.catalog.get_watch(watch.id).state, WatchState.PAUSED
        )

    async def test_baseline_fallback_triggers(self) -> None:
        self.catalog.upsert_product(
            CatalogProduct(id="mug", name="Mug", baseline_price=Decimal("8"))
        )
        watch = self._watch(product_id="mug", target_price=Decimal("10"))

        event = await self.monitor.evaluate_one(watch)

        assert event is not None
        self.assertEqual(event.new_price, Decimal("8"))

    async def test_no_price_records_check_only(self) -> None:
        watch = self._watch(target_price=Decimal("100"))

        self.assertIsNone(await self.monitor.evaluate_one(watch))

        stored = self.catalog.get_watch(watch.id)
        self.assertIs(stored.state, WatchState.ACTIVE)
        self.assertEqual(stored.last_checked_at, self.now)

    async def test_restock_fires_on_transition(self) -> None:
        watch = self._watch(kind=WatchKind.RESTOCK)

        self._prices("kettle", "30.00", availability=Availability.OUT_OF_STOCK)
        self.assertIsNone(await self.monitor.check_watch(watch.id))
        self.assertIs(
            self.catalog.get_watch(watch.id).last_availability,
            Availability.OUT_OF_STOCK,
        )

        self._prices("kettle", "30.00")
        event = await self.monitor.check_watch(watch.id)

        assert event is not None
        self.assertTrue(event.title.startswith("Back in stock"))

    async def test_one_bad_watch_does_not_stop_the_cycle(self) -> None:
        self.catalog.upsert_product(CatalogProduct(id="boom", name="Boom"))
        self._watch(product_id="boom", target_price=Decimal("100"))
        good = self._watch(target_price=Decimal("100"))
        self._prices("kettle", "99.00")
        real_find = self.catalog.find_product

        def find(product_id: str) -> CatalogProduct | None:
            if product_id == "boom":
                raise RuntimeError("corrupt row")
            return real_find(product_id)

        with patch.object(self.catalog, "find_product", side_effect=find):
            summary = await self.monitor.evaluate_all()

        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.triggered, 1)
        self.assertIs(
            self.catalog.get_watch(good.id).state, WatchState.TRIGGERED
        )

    async def test_failed_delivery_keeps_trigger(self) -> None:
        """Delivery errors never roll back the committed state."""

        class BrokenChannel:
            name = "email"

            def deliver(self, event: NotificationEvent) -> None:
                raise ConnectionError("smtp down")

        self.dispatcher.channels["email"] = BrokenChannel()
        watch = self._watch(target_price=Decimal("100"))
        self._prices("kettle", "99.00")

        await self.monitor.evaluate_all()
        await self.dispatcher.drain()

        self.assertIs(
            self.catalog.get_watch(watch.id).state, WatchState.TRIGGERED
        )
        self.assertEqual(self.dispatcher.failed, 1)
        self.assertEqual(len(self.channel.events), 1)

    async def test_stats(self) -> None:
        self._watch(
            baseline_price=Decimal("120.00"), target_price=Decimal("100")
        )
        paused = self._watch(target_price=Decimal("1"))
        self.catalog.set_watch_state(paused.id, WatchState.PAUSED, self.now)
        self._prices("kettle", "99.00")
        await self.monitor.evaluate_all()

        stats = self.monitor.monitoring_stats()
        self.assertEqual(stats["total_watches"], 2)
        self.assertEqual(stats["triggered_watches"], 1)
        self.assertEqual(stats["paused_watches"], 1)
        self.assertFalse(stats["is_monitoring"])

        mine = self.monitor.watch_stats("shopper@example.com")
        self.assertEqual(mine["total_savings"], Decimal("21.00"))


class TestMonitorLoop(unittest.IsolatedAsyncioTestCase):
    """Timer loop, stop and cancellation around committed triggers."""

    def setUp(self) -> None:
        self.tmp_dir = tempfile.TemporaryDirectory()
        base = Path(self.tmp_dir.name)
        self.catalog = CatalogStore(base / "catalog.db")
        self.store = HistoryStore(base / "history.db")
        self.channel = RecordingChannel()
        self.dispatcher = NotificationDispatcher([self.channel])
        self.catalog.upsert_product(
            CatalogProduct(id="kettle", name="Kettle", source_urls={})
        )
        for _ in range(2):
            self.catalog.save_watch(
                Watch(
                    owner_id="shopper@example.com",
                    product_id="kettle",
                    kind=WatchKind.ABSOLUTE_DROP,
                    target_price=Decimal("100.00"),
                )
            )
        quote = Quote(
            source="a",
            product_id="kettle",
            url="https://a/kettle",
            price=Decimal("99.00"),
            observed_at=_T0,
        )
        self.store.append(
            "kettle", ComparisonResult.from_quotes("kettle", _T0, [quote])
        )
        self.entered = threading.Event()
        self.release = threading.Event()

    def tearDown(self) -> None:
        self.release.set()
        self.catalog.close()
        self.store.close()
        self.tmp_dir.cleanup()

    def _monitor(self, **kwargs: object) -> PriceMonitor:
        return PriceMonitor(
            self.catalog,
            self.store,
            dispatcher=self.dispatcher,
            clock=lambda: _T0,
            **kwargs,  # type: ignore[arg-type]
        )

    def _stall_second_lookup(self) -> object:
        """Block the second product lookup until ``release`` is set."""
        real_find = self.catalog.find_product
        calls: list[str] = []

        def slow_find(product_id: str) -> CatalogProduct | None:
            calls.append(product_id)
            if len(calls) == 2:
                self.entered.set()
                self.release.wait(5)
            return real_find(product_id)

        return patch.object(
            self.catalog, "find_product", side_effect=slow_find
        )

    async def test_stop_mid_cycle_delivers_every_trigger(self) -> None:
        monitor = self._monitor()
        with self._stall_second_lookup():
            self.assertTrue(monitor.start())
            await asyncio.to_thread(self.entered.wait, 5)

            monitor.stop()
            self.release.set()
            await monitor.wait_idle()
        await self.dispatcher.drain()

        self.assertEqual(len(self.channel.events), 2)
        self.assertEqual(
            {w.state for w in self.catalog.list_watches()},
            {WatchState.TRIGGERED},
        )
        self.assertFalse(monitor.state.monitoring)

    async def test_cancelled_cycle_still_hands_off_commit(self) -> None:
        monitor = self._monitor()
        with self._stall_second_lookup():
            cycle = asyncio.create_task(monitor.evaluate_all())
            await asyncio.to_thread(self.entered.wait, 5)

            cycle.cancel()
            self.release.set()
            with self.assertRaises(asyncio.CancelledError):
                await cycle
            for _ in range(200):
                if self.dispatcher.pending == 2:
                    break
                await asyncio.sleep(0.01)

        self.assertEqual(self.dispatcher.pending, 2)
        self.assertEqual(
            {w.state for w in self.catalog.list_watches()},
            {WatchState.TRIGGERED},
        )

    async def test_loop_waits_with_injected_sleep(self) -> None:
        naps: list[float] = []
        monitor: PriceMonitor

        async def nap(seconds: float) -> None:
            naps.append(seconds)
            monitor.stop()

        monitor = self._monitor(interval=42.0, sleep=nap)
        monitor.start()
        await monitor.wait_idle()

        self.assertEqual(naps, [42.0])
        self.assertEqual(self.dispatcher.pending, 2)


if __name__ == "__main__":
    unittest.main()
