# src/storage/catalog_store.py

"""SQLite-backed catalog, watch and in-app notification store."""

import json
import logging
import sqlite3
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from src.config.settings import Settings
from src.errors import ProductNotFoundError, StoreError, WatchNotFoundError
from src.models.product import CatalogProduct
from src.models.quote import Availability
from src.models.watch import (
    NotificationChannels,
    NotificationEvent,
    Watch,
    WatchKind,
    WatchState,
    utcnow,
)

logger = logging.getLogger("price_watch.catalog")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS products (
    id             TEXT    PRIMARY KEY,
    name           TEXT    NOT NULL,
    baseline_price TEXT,
    source_urls    TEXT    NOT NULL DEFAULT '{}',
    featured       INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS watches (
    id                TEXT    PRIMARY KEY,
    owner_id          TEXT    NOT NULL,
    product_id        TEXT    NOT NULL,
    product_name      TEXT    NOT NULL DEFAULT '',
    kind              TEXT    NOT NULL,
    baseline_price    TEXT,
    target_price      TEXT,
    threshold_percent TEXT,
    state             TEXT    NOT NULL DEFAULT 'active',
    triggered_price   TEXT,
    triggered_at      TEXT,
    trigger_count     INTEGER NOT NULL DEFAULT 0,
    last_checked_at   TEXT,
    last_availability TEXT,
    channels          TEXT    NOT NULL,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_watches_state ON watches(state);
CREATE INDEX IF NOT EXISTS idx_watches_owner ON watches(owner_id);

CREATE TABLE IF NOT EXISTS notifications (
    id         TEXT    PRIMARY KEY,
    owner_id   TEXT    NOT NULL,
    watch_id   TEXT    NOT NULL,
    payload    TEXT    NOT NULL,
    is_read    INTEGER NOT NULL DEFAULT 0,
    created_at TEXT    NOT NULL
);
"""

_WATCH_COLUMNS = (
    "id, owner_id, product_id, product_name, kind, baseline_price, "
    "target_price, threshold_percent, state, triggered_price, "
    "triggered_at, trigger_count, last_checked_at, last_availability, "
    "channels, created_at, updated_at"
)


def _dec_out(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


def _dec_in(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _ts_out(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _ts_in(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _channels_out(c: NotificationChannels) -> str:
    return json.dumps({"email": c.email, "push": c.push, "in_app": c.in_app})


class CatalogStore:
    """Narrow read/write interface over products, watches and the inbox."""

    def __init__(
        self,
        db_path: Path | None = None,
        notification_retention: int | None = None,
    ) -> None:
        path = db_path or Settings.CATALOG_DB_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        self.notification_retention = (
            notification_retention or Settings.NOTIFICATION_RETENTION
        )
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(path), check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        logger.debug("CatalogStore opened at %s", path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Run one statement in its own transaction; return rowcount."""
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params).rowcount
            except sqlite3.Error as exc:
                logger.error(
                    "Catalog write failed: %s", exc, exc_info=True,
                )
                raise StoreError(str(exc)) from exc

    # ── Products ─────────────────────────────────────────

    def upsert_product(self, product: CatalogProduct) -> None:
        """Insert or replace a catalog product."""
        self._write(
            "INSERT INTO products "
            "(id, name, baseline_price, source_urls, featured) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, "
            "baseline_price=excluded.baseline_price, "
            "source_urls=excluded.source_urls, "
            "featured=excluded.featured",
            (
                product.id,
                product.name,
                _dec_out(product.baseline_price),
                json.dumps(product.source_urls, sort_keys=True),
                int(product.featured),
            ),
        )

    @staticmethod
    def _row_to_product(row: tuple[Any, ...]) -> CatalogProduct:
        return CatalogProduct(
            id=row[0],
            name=row[1],
            baseline_price=_dec_in(row[2]),
            source_urls=json.loads(row[3]),
            featured=bool(row[4]),
        )

    def get_product(self, product_id: str) -> CatalogProduct:
        """Return a product or raise :class:`ProductNotFoundError`."""
        with self._lock:
            row = self._conn.execute(
                "SELECT id, name, baseline_price, source_urls, featured "
                "FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        if row is None:
            raise ProductNotFoundError(product_id)
        return self._row_to_product(row)

    def find_product(self, product_id: str) -> CatalogProduct | None:
        """Return a product, or None when unknown."""
        try:
            return self.get_product(product_id)
        except ProductNotFoundError:
            return None

    def list_products(
        self, featured_only: bool = False,
    ) -> list[CatalogProduct]:
        """All catalog products ordered by id."""
        sql = (
            "SELECT id, name, baseline_price, source_urls, featured "
            "FROM products"
        )
        if featured_only:
            sql += " WHERE featured = 1"
        sql += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [self._row_to_product(r) for r in rows]

    # ── Watches ──────────────────────────────────────────

    @staticmethod
    def _watch_values(watch: Watch) -> tuple[Any, ...]:
        return (
            watch.id,
            watch.owner_id,
            watch.product_id,
            watch.product_name,
            watch.kind.value,
            _dec_out(watch.baseline_price),
            _dec_out(watch.target_price),
            _dec_out(watch.threshold_percent),
            watch.state.value,
            _dec_out(watch.triggered_price),
            _ts_out(watch.triggered_at),
            watch.trigger_count,
            _ts_out(watch.last_checked_at),
            (
                watch.last_availability.value
                if watch.last_availability is not None
                else None
            ),
            _channels_out(watch.channels),
            _ts_out(watch.created_at),
            _ts_out(watch.updated_at),
        )

    @staticmethod
    def _row_to_watch(row: tuple[Any, ...]) -> Watch:
        channels: dict[str, bool] = json.loads(row[14])
        return Watch(
            id=row[0],
            owner_id=row[1],
            product_id=row[2],
            product_name=row[3],
            kind=WatchKind(row[4]),
            baseline_price=_dec_in(row[5]),
            target_price=_dec_in(row[6]),
            threshold_percent=_dec_in(row[7]),
            state=WatchState(row[8]),
            triggered_price=_dec_in(row[9]),
            triggered_at=_ts_in(row[10]),
            trigger_count=row[11],
            last_checked_at=_ts_in(row[12]),
            last_availability=(
                Availability(row[13]) if row[13] else None
            ),
            channels=NotificationChannels(**channels),
            created_at=_ts_in(row[15]) or utcnow(),
            updated_at=_ts_in(row[16]) or utcnow(),
        )

    def save_watch(self, watch: Watch) -> Watch:
        """Insert or fully replace a watch (owner edits)."""
        placeholders = ", ".join("?" * 17)
        self._write(
            f"INSERT OR REPLACE INTO watches ({_WATCH_COLUMNS}) "
            f"VALUES ({placeholders})",
            self._watch_values(watch),
        )
        return watch

    def get_watch(self, watch_id: str) -> Watch:
        """Return a watch or raise :class:`WatchNotFoundError`."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_WATCH_COLUMNS} FROM watches WHERE id = ?",
                (watch_id,),
            ).fetchone()
        if row is None:
            raise WatchNotFoundError(watch_id)
        return self._row_to_watch(row)

    def list_watches(
        self,
        state: WatchState | None = None,
        owner_id: str | None = None,
    ) -> list[Watch]:
        """Watches filtered by state and/or owner, oldest first."""
        clauses: list[str] = []
        params: list[str] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        sql = f"SELECT {_WATCH_COLUMNS} FROM watches"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, id"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_watch(r) for r in rows]

    def list_active_watches(self) -> list[Watch]:
        """Watches eligible for evaluation."""
        return self.list_watches(state=WatchState.ACTIVE)

    def commit_trigger(
        self, watch_id: str, price: Decimal, at: datetime,
    ) -> Watch | None:
        """Move a watch ``active -> triggered``.

        The update is conditional on the stored state still being
        ``active``; returns None when another evaluation got there
        first (or the watch was paused meanwhile).
        """
        changed = self._write(
            "UPDATE watches SET state = ?, triggered_price = ?, "
            "triggered_at = ?, trigger_count = trigger_count + 1, "
            "last_checked_at = ?, updated_at = ? "
            "WHERE id = ? AND state = ?",
            (
                WatchState.TRIGGERED.value,
                str(price),
                at.isoformat(),
                at.isoformat(),
                at.isoformat(),
                watch_id,
                WatchState.ACTIVE.value,
            ),
        )
        if not changed:
            return None
        return self.get_watch(watch_id)

    def record_check(
        self,
        watch_id: str,
        at: datetime,
        availability: Availability | None = None,
    ) -> None:
        """Stamp the last evaluation time and observed availability."""
        if availability is None:
            self._write(
                "UPDATE watches SET last_checked_at = ? WHERE id = ?",
                (at.isoformat(), watch_id),
            )
            return
        self._write(
            "UPDATE watches SET last_checked_at = ?, "
            "last_availability = ? WHERE id = ?",
            (at.isoformat(), availability.value, watch_id),
        )

    def set_watch_state(
        self, watch_id: str, state: WatchState, at: datetime,
    ) -> Watch:
        """Owner action: pause or reactivate.

        Reactivation clears the trigger price and time but keeps the
        cumulative trigger count.
        """
        if state is WatchState.ACTIVE:
            changed = self._write(
                "UPDATE watches SET state = ?, triggered_price = NULL, "
                "triggered_at = NULL, updated_at = ? WHERE id = ?",
                (state.value, at.isoformat(), watch_id),
            )
        else:
            changed = self._write(
                "UPDATE watches SET state = ?, updated_at = ? "
                "WHERE id = ?",
                (state.value, at.isoformat(), watch_id),
            )
        if not changed:
            raise WatchNotFoundError(watch_id)
        return self.get_watch(watch_id)

    def update_watch_settings(
        self,
        watch_id: str,
        target_price: Decimal | None,
        threshold_percent: Decimal | None,
        channels: NotificationChannels,
        at: datetime,
    ) -> Watch:
        """Owner edit of the condition and delivery channels.

        Only those columns are written.  State, trigger price, trigger
        count and check stamps belong to the evaluator, so an edit that
        races a trigger commit never undoes it.
        """
        changed = self._write(
            "UPDATE watches SET target_price = ?, threshold_percent = ?, "
            "channels = ?, updated_at = ? WHERE id = ?",
            (
                _dec_out(target_price),
                _dec_out(threshold_percent),
                _channels_out(channels),
                at.isoformat(),
                watch_id,
            ),
        )
        if not changed:
            raise WatchNotFoundError(watch_id)
        return self.get_watch(watch_id)

    def delete_watch(self, watch_id: str) -> None:
        """Remove one watch."""
        if not self._write(
            "DELETE FROM watches WHERE id = ?", (watch_id,),
        ):
            raise WatchNotFoundError(watch_id)

    def delete_owner_watches(self, owner_id: str) -> int:
        """Remove every watch of an owner (account deletion)."""
        removed = self._write(
            "DELETE FROM watches WHERE owner_id = ?", (owner_id,),
        )
        logger.info("Deleted %d watches for owner %s", removed, owner_id)
        return removed

    # ── In-app notifications ─────────────────────────────

    def add_notification(self, event: NotificationEvent) -> None:
        """Persist an in-app notification, keeping the newest N."""
        self._write(
            "INSERT OR IGNORE INTO notifications "
            "(id, owner_id, watch_id, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                event.id,
                event.owner_id,
                event.watch_id,
                json.dumps(event.to_dict()),
                event.created_at.isoformat(),
            ),
        )
        self._write(
            "DELETE FROM notifications WHERE id NOT IN ("
            "  SELECT id FROM notifications "
            "  ORDER BY created_at DESC LIMIT ?"
            ")",
            (self.notification_retention,),
        )

    def list_notifications(
        self, owner_id: str, unread_only: bool = False,
    ) -> list[dict[str, object]]:
        """An owner's inbox, newest first."""
        sql = (
            "SELECT payload, is_read FROM notifications "
            "WHERE owner_id = ?"
        )
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC"
        with self._lock:
            rows = self._conn.execute(sql, (owner_id,)).fetchall()
        results: list[dict[str, object]] = []
        for payload, is_read in rows:
            item: dict[str, object] = json.loads(payload)
            item["is_read"] = bool(is_read)
            results.append(item)
        return results

    def mark_notification_read(self, notification_id: str) -> bool:
        """Flag one notification as read; False if unknown."""
        return bool(
            self._write(
                "UPDATE notifications SET is_read = 1 WHERE id = ?",
                (notification_id,),
            )
        )
