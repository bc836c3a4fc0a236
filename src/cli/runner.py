# src/cli/runner.py

"""Headless command runners built on the engine facade."""

import asyncio
import json
import logging
import signal
from decimal import Decimal, InvalidOperation

from rich.console import Console
from rich.table import Table

from src.errors import PriceWatchError
from src.models.comparison import ComparisonResult, HistoryEntry
from src.models.product import CatalogProduct
from src.models.watch import (
    NotificationChannels,
    Watch,
    WatchKind,
    WatchState,
)
from src.services.engine import PriceWatchEngine, SourceCheck, build_engine
from src.services.health_checker import HealthChecker

logger = logging.getLogger("price_watch.cli")

# Stderr console for status messages so stdout stays clean for tables
_err = Console(stderr=True)


def parse_price(text: str | None) -> Decimal | None:
    """Parse a CLI money argument like ``49.99``."""
    if text is None:
        return None
    try:
        return Decimal(text.strip().lstrip("$"))
    except InvalidOperation:
        raise SystemExit(f"Not a price: {text!r}") from None


def parse_sources(pairs: list[str] | None) -> dict[str, str]:
    """Map ``source=url`` arguments to a dict."""
    result: dict[str, str] = {}
    for pair in pairs or []:
        source, sep, url = pair.partition("=")
        if not sep or not source.strip():
            raise SystemExit(f"Expected source=url, got {pair!r}")
        result[source.strip()] = url.strip()
    return result


def _fmt(value: Decimal | None) -> str:
    return f"${value:,.2f}" if value is not None else "—"


def _print_result(result: ComparisonResult) -> None:
    """Render one comparison as a Rich table."""
    table = Table(
        title=f"Prices for {result.product_id}",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("Source", style="magenta")
    table.add_column("Price", justify="right", style="green")
    table.add_column("Availability", justify="center")
    table.add_column("URL", overflow="fold", style="dim")
    for q in sorted(result.quotes, key=lambda q: q.price):
        table.add_row(q.source, _fmt(q.price), q.availability.value, q.url)
    for source in result.failed_sources:
        table.add_row(source, "failed", "—", "")
    Console().print(table)
    s = result.summary
    _err.print(
        f"[dim]lowest {_fmt(s.lowest)} · avg {_fmt(s.average)} · "
        f"highest {_fmt(s.highest)} · {s.source_count} sources[/dim]"
    )


def _print_history(product_id: str, entries: list[HistoryEntry]) -> None:
    table = Table(title=f"History for {product_id}", title_style="bold cyan")
    table.add_column("Checked at")
    table.add_column("Lowest", justify="right", style="green")
    table.add_column("Average", justify="right")
    table.add_column("Highest", justify="right")
    table.add_column("Sources", justify="center")
    for e in entries:
        table.add_row(
            e.recorded_at.strftime("%Y-%m-%d %H:%M"),
            _fmt(e.summary.lowest),
            _fmt(e.summary.average),
            _fmt(e.summary.highest),
            str(e.summary.source_count),
        )
    Console().print(table)


def _print_watches(watches: list[Watch]) -> None:
    table = Table(title="Watches", title_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Owner")
    table.add_column("Product")
    table.add_column("Kind")
    table.add_column("Condition", justify="right")
    table.add_column("State")
    table.add_column("Triggered", justify="right")
    for w in watches:
        if w.kind is WatchKind.ABSOLUTE_DROP:
            condition = f"≤ {_fmt(w.target_price)}"
        elif w.kind is WatchKind.PERCENTAGE_DROP:
            condition = f"-{w.threshold_percent}% of {_fmt(w.baseline_price)}"
        else:
            condition = "back in stock"
        table.add_row(
            w.id,
            w.owner_id,
            w.product_id,
            w.kind.value,
            condition,
            w.state.value,
            _fmt(w.triggered_price),
        )
    Console().print(table)


async def _with_engine(action) -> int:  # type: ignore[no-untyped-def]
    """Run *action(engine)*, mapping engine errors to exit code 1."""
    engine = build_engine()
    try:
        await action(engine)
        return 0
    except PriceWatchError as exc:
        logger.error("Command failed: %s", exc, exc_info=True)
        _err.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        return 1
    finally:
        await engine.dispatcher.drain()
        engine.close()


async def run_daemon() -> int:
    """Run sweeps and the monitor until SIGINT / SIGTERM."""
    engine = build_engine()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    engine.start()
    _err.print("[bold]price_watch running[/bold] [dim](Ctrl+C to stop)[/dim]")
    try:
        await stop.wait()
    finally:
        _err.print("[dim]Stopping, waiting for in-flight refreshes…[/dim]")
        await engine.stop()
        engine.close()
    return 0


async def run_refresh(product_id: str) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        report = await engine.refresh_product(product_id)
        if report.found:
            _print_result(report.result)
        else:
            _err.print(f"[yellow]{report.message}[/yellow]")

    return await _with_engine(action)


async def run_refresh_all() -> int:
    async def action(engine: PriceWatchEngine) -> None:
        outcome = await engine.refresh_all()
        if outcome.already_running:
            _err.print(
                f"[yellow]Sweep {outcome.run.id} already running[/yellow]"
            )
        print(json.dumps(outcome.run.to_dict(), indent=2))

    return await _with_engine(action)


async def run_status() -> int:
    async def action(engine: PriceWatchEngine) -> None:
        status = engine.get_sweep_status()
        status["watches"] = engine.monitor.monitoring_stats()
        status["last_refreshed"] = engine.store.last_refreshed()
        print(json.dumps(status, indent=2, default=str))

    return await _with_engine(action)


async def run_history(product_id: str, days: float) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        entries = await engine.get_price_history(product_id, days)
        if not entries:
            _err.print(f"[yellow]No history for {product_id}[/yellow]")
            return
        _print_history(product_id, entries)

    return await _with_engine(action)


async def run_check(watch_id: str | None) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        if watch_id is None:
            summary = await engine.check_all_watches()
            _err.print(
                f"[bold]{summary.checked} checked, "
                f"{summary.triggered} triggered[/bold]"
            )
            return
        event = await engine.check_watch(watch_id)
        if event is None:
            _err.print(f"[dim]Watch {watch_id} did not trigger[/dim]")
        else:
            print(json.dumps(event.to_dict(), indent=2))

    return await _with_engine(action)


async def run_set_state(watch_id: str, pause: bool) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        if pause:
            watch = await engine.pause_watch(watch_id)
        else:
            watch = await engine.reactivate_watch(watch_id)
        _err.print(f"Watch {watch.id} is now [bold]{watch.state.value}[/bold]")

    return await _with_engine(action)


async def run_list_watches(
    owner_id: str | None, state: str | None = None,
) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        watches = await engine.list_watches(
            owner_id=owner_id,
            state=WatchState(state) if state else None,
        )
        _print_watches(watches)

    return await _with_engine(action)


async def run_add_product(
    product_id: str,
    name: str,
    baseline: str | None,
    source_pairs: list[str] | None,
    featured: bool,
) -> int:
    product = CatalogProduct(
        id=product_id,
        name=name,
        baseline_price=parse_price(baseline),
        source_urls=parse_sources(source_pairs),
        featured=featured,
    )

    async def action(engine: PriceWatchEngine) -> None:
        await engine.add_product(product)
        _err.print(
            f"Saved product {product.id} with "
            f"{len(product.configured_sources)} sources"
        )

    return await _with_engine(action)


async def run_add_watch(
    owner_id: str,
    product_id: str,
    kind: str,
    target: str | None,
    percent: str | None,
    no_email: bool,
    no_push: bool,
) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        watch = await engine.create_watch(
            owner_id=owner_id,
            product_id=product_id,
            kind=WatchKind(kind),
            target_price=parse_price(target),
            threshold_percent=parse_price(percent),
            channels=NotificationChannels(
                email=not no_email, push=not no_push,
            ),
        )
        print(watch.id)

    return await _with_engine(action)


def edited_channels(
    current: NotificationChannels,
    email: bool | None,
    push: bool | None,
    in_app: bool | None,
) -> NotificationChannels | None:
    """Apply ``--[no-]email`` style flags; None if none were given."""
    if email is None and push is None and in_app is None:
        return None
    return NotificationChannels(
        email=current.email if email is None else email,
        push=current.push if push is None else push,
        in_app=current.in_app if in_app is None else in_app,
    )


async def run_edit_watch(
    watch_id: str,
    target: str | None,
    percent: str | None,
    email: bool | None,
    push: bool | None,
    in_app: bool | None,
) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        current = await asyncio.to_thread(engine.catalog.get_watch, watch_id)
        watch = await engine.update_watch(
            watch_id,
            target_price=parse_price(target),
            threshold_percent=parse_price(percent),
            channels=edited_channels(current.channels, email, push, in_app),
        )
        _print_watches([watch])

    return await _with_engine(action)


async def run_owner_stats(owner_id: str) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        stats = await engine.get_watch_stats(owner_id)
        print(json.dumps(stats, indent=2, default=str))

    return await _with_engine(action)


async def run_inbox(owner_id: str, unread_only: bool) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        items = await engine.list_inbox(owner_id, unread_only)
        if not items:
            _err.print(f"[dim]No notifications for {owner_id}[/dim]")
            return
        table = Table(title=f"Inbox for {owner_id}", title_style="bold cyan")
        table.add_column("ID", style="dim")
        table.add_column("When")
        table.add_column("Message")
        table.add_column("Read", justify="center")
        for item in items:
            table.add_row(
                str(item["id"]),
                str(item["created_at"])[:16].replace("T", " "),
                str(item["message"]),
                "✓" if item["is_read"] else "",
            )
        Console().print(table)

    return await _with_engine(action)


async def run_mark_read(notification_id: str) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        if not await engine.mark_read(notification_id):
            _err.print(f"[yellow]No notification {notification_id}[/yellow]")
            return
        _err.print(f"Notification {notification_id} marked read")

    return await _with_engine(action)


async def run_delete_owner(owner_id: str) -> int:
    async def action(engine: PriceWatchEngine) -> None:
        removed = await engine.delete_owner(owner_id)
        _err.print(f"Deleted {removed} watches for {owner_id}")

    return await _with_engine(action)


async def run_refresh_featured() -> int:
    async def action(engine: PriceWatchEngine) -> None:
        outcome = await engine.refresh_featured()
        if outcome.already_running:
            _err.print(
                f"[yellow]Sweep {outcome.run.id} already running[/yellow]"
            )
        print(json.dumps(outcome.run.to_dict(), indent=2))

    return await _with_engine(action)


def _print_source_check(check: SourceCheck) -> None:
    if check.quote is None:
        _err.print(f"[red][{check.source}] {check.error}[/red]")
        return
    q = check.quote
    table = Table(
        title=f"{check.source}: {check.url}", title_style="bold cyan",
    )
    table.add_column("Field", style="magenta")
    table.add_column("Value")
    table.add_row("Title", q.title or "—")
    table.add_row("Price", f"{q.currency} {q.price}")
    table.add_row("Was", _fmt(q.original_price))
    table.add_row("Availability", q.availability.value)
    Console().print(table)


async def run_scrape(source: str, url: str) -> int:
    """Fetch one URL through one adapter; exit 1 if nothing came back."""
    engine = build_engine()
    try:
        check = await engine.test_source(source, url)
    finally:
        engine.close()
    _print_source_check(check)
    return 0 if check.ok else 1


async def run_health_check() -> int:
    """Probe every retailer and print a status table."""
    results = await HealthChecker().check_all()
    table = Table(title="Source health", title_style="bold cyan")
    table.add_column("Source", style="magenta")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Message", style="dim")
    styles = {"ok": "green", "slow": "yellow"}
    for r in results:
        style = styles.get(r.status, "red")
        table.add_row(
            r.source_id,
            f"[{style}]{r.status}[/{style}]",
            f"{r.latency_ms:.0f}ms",
            r.message,
        )
    Console().print(table)
    return 0 if all(r.status in ("ok", "slow") for r in results) else 1
