"""Trade repository — SQLite CRUD for the trades table."""

import json
import sqlite3
import time
from typing import Optional

from blitzbot.errors import PersistenceFailure
from blitzbot.repos.db import get_connection


class TradeRepo:
    """Data access layer for trade records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_open(
        self,
        user_id: str,
        external_id: str,
        instrument_id: int,
        instrument_name: str,
        direction: str,
        amount: float,
        strategy: str,
        confidence: float,
        indicators: dict,
        expiration_seconds: int,
        opened_at: float,
        expires_at: float,
    ) -> Optional[int]:
        """Insert an open trade and return its ``id``.

        Returns ``None`` without writing when *external_id* is already
        recorded.
        """
        conn = get_connection(self._db_path)
        try:
            existing = conn.execute(
                "SELECT id FROM trades WHERE external_id = ?", (external_id,),
            ).fetchone()
            if existing is not None:
                return None
            cur = conn.execute(
                """
                INSERT INTO trades
                    (user_id, external_id, instrument_id, instrument_name,
                     direction, amount, strategy, confidence, indicators,
                     expiration_seconds, opened_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, external_id, instrument_id, instrument_name,
                    direction, amount, strategy, confidence,
                    json.dumps(indicators, default=str),
                    expiration_seconds, opened_at, expires_at,
                ),
            )
            conn.commit()
            return cur.lastrowid
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"trade insert failed: {exc}") from exc
        finally:
            conn.close()

    def close_trade(
        self,
        external_id: str,
        result: str,
        pnl: float,
        exit_price: float,
        status: str = "closed",
        closed_at: Optional[float] = None,
    ) -> bool:
        """Record the outcome of a trade.  Returns ``False`` if no row matched."""
        closed_at = closed_at if closed_at is not None else time.time()
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE trades
                SET result = ?, pnl = ?, exit_price = ?, status = ?, closed_at = ?
                WHERE external_id = ?
                """,
                (result, pnl, exit_price, status, closed_at, external_id),
            )
            conn.commit()
            return cur.rowcount > 0
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"trade close failed: {exc}") from exc
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 20,
        status_filter: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        """Return recent trades, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if status_filter:
                conditions.append("status = ?")
                params.append(status_filter)
            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trades {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trades {where_clause}",
                params,
            ).fetchone()[0]

            trades = []
            for row in rows:
                trade = dict(row)
                if trade.get("indicators"):
                    trade["indicators"] = json.loads(trade["indicators"])
                trades.append(trade)
            return {"trades": trades, "total": total}
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"trade query failed: {exc}") from exc
        finally:
            conn.close()

    def get_by_external_id(self, external_id: str) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM trades WHERE external_id = ?", (external_id,),
            ).fetchone()
            return dict(row) if row else None
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"trade lookup failed: {exc}") from exc
        finally:
            conn.close()
