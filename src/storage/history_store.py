# src/storage/history_store.py

"""SQLite-backed append-only price history plus per-product snapshots."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from src.config.settings import Settings
from src.errors import StaleResultError, StoreError
from src.models.comparison import (
    ComparisonResult,
    HistoryEntry,
    PriceSummary,
    Snapshot,
)
from src.models.quote import Quote

logger = logging.getLogger("price_watch.history")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS history_entries (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id     TEXT    NOT NULL,
    checked_at     TEXT    NOT NULL,
    lowest         TEXT,
    highest        TEXT,
    average        TEXT,
    source_count   INTEGER NOT NULL DEFAULT 0,
    quotes         TEXT    NOT NULL,
    failed_sources TEXT    NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_history_product_date
    ON history_entries(product_id, checked_at);

CREATE TABLE IF NOT EXISTS snapshots (
    product_id     TEXT    PRIMARY KEY,
    entry_id       INTEGER NOT NULL,
    checked_at     TEXT    NOT NULL,
    lowest         TEXT,
    highest        TEXT,
    average        TEXT,
    source_count   INTEGER NOT NULL DEFAULT 0,
    quotes         TEXT    NOT NULL,
    failed_sources TEXT    NOT NULL DEFAULT '[]'
);
"""

_COLUMNS = (
    "product_id, checked_at, lowest, highest, average, "
    "source_count, quotes, failed_sources"
)


def _to_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _dec(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


class HistoryStore:
    """Append-only price log with a bounded per-product ring buffer.

    :meth:`append` is the only mutator.  The history insert, the
    retention trim, and the snapshot overwrite commit in a single
    transaction under the store lock, so :meth:`latest` never sees one
    without the other.
    """

    def __init__(
        self,
        db_path: Path | None = None,
        retention: int | None = None,
    ) -> None:
        path = db_path or Settings.HISTORY_DB_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        self.retention = max(1, retention or Settings.HISTORY_RETENTION)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(path), check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        logger.debug(
            "HistoryStore opened at %s (retention=%d)",
            path,
            self.retention,
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # ── Row mapping ──────────────────────────────────────

    @staticmethod
    def _row_values(
        product_id: str, result: ComparisonResult,
    ) -> tuple[Any, ...]:
        s = result.summary
        return (
            product_id,
            _to_utc(result.checked_at).isoformat(),
            str(s.lowest) if s.lowest is not None else None,
            str(s.highest) if s.highest is not None else None,
            str(s.average) if s.average is not None else None,
            s.source_count,
            json.dumps([q.to_dict() for q in result.quotes]),
            json.dumps(list(result.failed_sources)),
        )

    @staticmethod
    def _row_to_result(row: tuple[Any, ...]) -> ComparisonResult:
        """Map (product_id, checked_at, ..., failed_sources) to a result."""
        quotes = tuple(Quote.from_dict(q) for q in json.loads(row[6]))
        return ComparisonResult(
            product_id=row[0],
            checked_at=datetime.fromisoformat(row[1]),
            quotes=quotes,
            summary=PriceSummary(
                lowest=_dec(row[2]),
                highest=_dec(row[3]),
                average=_dec(row[4]),
                source_count=row[5],
            ),
            failed_sources=tuple(json.loads(row[7])),
        )

    # ── Recording ────────────────────────────────────────

    def append(
        self, product_id: str, result: ComparisonResult,
    ) -> HistoryEntry:
        """Persist *result* as a history entry and the new snapshot.

        Raises:
            StaleResultError: *result* is not newer than the snapshot.
            StoreError: the database write failed; nothing committed.
        """
        checked_at = _to_utc(result.checked_at)
        values = self._row_values(product_id, result)

        with self._lock:
            try:
                current = self._conn.execute(
                    "SELECT checked_at FROM snapshots WHERE product_id = ?",
                    (product_id,),
                ).fetchone()
                if current is not None and (
                    datetime.fromisoformat(current[0]) >= checked_at
                ):
                    raise StaleResultError(
                        f"Result for {product_id} at "
                        f"{checked_at.isoformat()} is not newer than "
                        f"snapshot at {current[0]}"
                    )

                with self._conn:
                    cur = self._conn.execute(
                        f"INSERT INTO history_entries ({_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        values,
                    )
                    entry_id = cur.lastrowid
                    evicted = self._conn.execute(
                        "DELETE FROM history_entries "
                        "WHERE product_id = ? AND id NOT IN ("
                        "  SELECT id FROM history_entries "
                        "  WHERE product_id = ? "
                        "  ORDER BY checked_at DESC, id DESC LIMIT ?"
                        ")",
                        (product_id, product_id, self.retention),
                    ).rowcount
                    self._conn.execute(
                        f"INSERT INTO snapshots (entry_id, {_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                        "ON CONFLICT(product_id) DO UPDATE SET "
                        "entry_id=excluded.entry_id, "
                        "checked_at=excluded.checked_at, "
                        "lowest=excluded.lowest, "
                        "highest=excluded.highest, "
                        "average=excluded.average, "
                        "source_count=excluded.source_count, "
                        "quotes=excluded.quotes, "
                        "failed_sources=excluded.failed_sources",
                        (entry_id, *values),
                    )
            except sqlite3.Error as exc:
                logger.error(
                    "History append failed for %s: %s",
                    product_id,
                    exc,
                    exc_info=True,
                )
                raise StoreError(
                    f"Could not record history for {product_id}: {exc}"
                ) from exc

        if evicted:
            logger.debug(
                "Evicted %d old history entries for %s",
                evicted,
                product_id,
            )
        logger.info(
            "Recorded %d quotes for %s at %s",
            len(result.quotes),
            product_id,
            checked_at.isoformat(),
        )
        return HistoryEntry(entry_id=int(entry_id or 0), result=result)

    # ── Querying ─────────────────────────────────────────

    def latest(self, product_id: str) -> Snapshot | None:
        """Return the current snapshot, or None if never refreshed."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM snapshots WHERE product_id = ?",
                (product_id,),
            ).fetchone()
        if row is None:
            return None
        return Snapshot(
            product_id=product_id, result=self._row_to_result(row)
        )

    def history(
        self,
        product_id: str,
        since_days: float | None = None,
        now: datetime | None = None,
    ) -> list[HistoryEntry]:
        """Entries for *product_id*, oldest first.

        With *since_days*, only entries recorded within that many days
        of *now* are returned.
        """
        sql = (
            f"SELECT id, {_COLUMNS} FROM history_entries "
            "WHERE product_id = ?"
        )
        params: list[Any] = [product_id]
        if since_days is not None:
            reference = _to_utc(now or datetime.now(timezone.utc))
            cutoff = reference - timedelta(days=since_days)
            sql += " AND checked_at >= ?"
            params.append(cutoff.isoformat())
        sql += " ORDER BY checked_at ASC, id ASC"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            HistoryEntry(entry_id=r[0], result=self._row_to_result(r[1:]))
            for r in rows
        ]

    def entry_count(self, product_id: str) -> int:
        """Number of retained history entries for a product."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(id) FROM history_entries "
                "WHERE product_id = ?",
                (product_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    def last_refreshed(
        self, product_id: str | None = None,
    ) -> dict[str, dict[str, object]]:
        """Last refresh time and summary, per product.

        With *product_id*, the mapping holds at most that one product.
        """
        sql = (
            "SELECT product_id, checked_at, lowest, highest, "
            "average, source_count FROM snapshots"
        )
        params: tuple[str, ...] = ()
        if product_id is not None:
            sql += " WHERE product_id = ?"
            params = (product_id,)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return {
            r[0]: {
                "refreshed_at": r[1],
                "lowest": r[2],
                "highest": r[3],
                "average": r[4],
                "source_count": r[5],
            }
            for r in rows
        }
