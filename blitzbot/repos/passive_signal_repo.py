"""Passive signal repository — SQLite CRUD for simulated signal records."""

import sqlite3
from typing import Optional

from blitzbot.errors import PersistenceFailure
from blitzbot.repos.db import get_connection

PENDING = "PENDING"
WIN = "WIN"
LOSS = "LOSS"


class PassiveSignalRepo:
    """Data access layer for passive signal records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_pending(
        self,
        instrument_id: int,
        instrument_name: str,
        timeframe: int,
        direction: str,
        confidence: float,
        entry_price: float,
        signal_timestamp: float,
        due_at: float,
    ) -> int:
        """Insert a PENDING record and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO passive_signals
                    (instrument_id, instrument_name, timeframe, direction,
                     confidence, entry_price, signal_timestamp, due_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instrument_id, instrument_name, timeframe, direction,
                    confidence, entry_price, signal_timestamp, due_at,
                ),
            )
            conn.commit()
            return cur.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"passive signal insert failed: {exc}") from exc
        finally:
            conn.close()

    def resolve(
        self,
        record_id: int,
        result: str,
        result_price: float,
        result_timestamp: float,
        price_diff: float,
    ) -> bool:
        """Resolve a record still PENDING.

        Returns ``False`` when the record was already resolved or purged, so
        no record is resolved twice.
        """
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE passive_signals
                SET result = ?, result_price = ?, result_timestamp = ?, price_diff = ?
                WHERE id = ? AND result = 'PENDING'
                """,
                (result, result_price, result_timestamp, price_diff, record_id),
            )
            conn.commit()
            return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"passive signal resolve failed: {exc}") from exc
        finally:
            conn.close()

    def purge_older_than(self, cutoff: float) -> int:
        """Delete records whose signal is older than *cutoff*, whatever their state."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                "DELETE FROM passive_signals WHERE signal_timestamp < ?", (cutoff,),
            )
            conn.commit()
            return cur.rowcount
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"passive signal purge failed: {exc}") from exc
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, record_id: int) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM passive_signals WHERE id = ?", (record_id,),
            ).fetchone()
            return dict(row) if row else None
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"passive signal lookup failed: {exc}") from exc
        finally:
            conn.close()

    def pending_due(self, now: float, limit: int = 10) -> list[dict]:
        """Return PENDING records whose ``due_at`` has passed, oldest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM passive_signals
                WHERE result = 'PENDING' AND due_at <= ?
                ORDER BY due_at ASC
                LIMIT ?
                """,
                (now, limit),
            ).fetchall()
            return [dict(r) for r in rows]
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"pending query failed: {exc}") from exc
        finally:
            conn.close()

    def recent(self, limit: int = 50) -> list[dict]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM passive_signals ORDER BY id DESC LIMIT ?", (limit,),
            ).fetchall()
            return [dict(r) for r in rows]
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"passive signal query failed: {exc}") from exc
        finally:
            conn.close()

    def performance(self) -> list[dict]:
        """Aggregate resolved records per instrument × timeframe.

        Returns rows sorted by win rate, best first.
        """
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                """
                SELECT instrument_id,
                       instrument_name,
                       timeframe,
                       COUNT(*)                                    AS total_signals,
                       SUM(CASE WHEN result = 'WIN' THEN 1 ELSE 0 END)  AS wins,
                       SUM(CASE WHEN result = 'LOSS' THEN 1 ELSE 0 END) AS losses,
                       MAX(signal_timestamp)                       AS last_signal
                FROM passive_signals
                WHERE result IN ('WIN', 'LOSS')
                GROUP BY instrument_id, timeframe
                """
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"performance query failed: {exc}") from exc
        finally:
            conn.close()

        stats = []
        for row in rows:
            entry = dict(row)
            total = entry["total_signals"]
            entry["win_rate"] = round(entry["wins"] / total * 100.0, 2) if total else 0.0
            stats.append(entry)
        stats.sort(key=lambda s: (s["win_rate"], s["total_signals"]), reverse=True)
        return stats
