"""Bot control repository — persisted start/stop commands per user.

Active rows are replayed once at boot so a session started while the
process was down is not lost.
"""

import json
import sqlite3
import time

from blitzbot.errors import PersistenceFailure
from blitzbot.repos.db import get_connection

ACTIVE = "ACTIVE"
INACTIVE = "INACTIVE"


class BotControlRepo:
    """Data access layer for the ``bot_control`` table.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def set_active(self, user_id: str, config: dict) -> None:
        """Mark *user_id* as running with *config*."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO bot_control (user_id, status, config, updated_at)
                VALUES (?, 'ACTIVE', ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    status = 'ACTIVE',
                    config = excluded.config,
                    updated_at = excluded.updated_at
                """,
                (user_id, json.dumps(config), time.time()),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"bot control upsert failed: {exc}") from exc
        finally:
            conn.close()

    def deactivate(self, user_id: str) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "UPDATE bot_control SET status = 'INACTIVE', updated_at = ? WHERE user_id = ?",
                (time.time(), user_id),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"bot control deactivate failed: {exc}") from exc
        finally:
            conn.close()

    def active_commands(self) -> list[dict]:
        """Return ``[{"user_id": ..., "config": {...}}]`` for every active row."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT user_id, config FROM bot_control WHERE status = 'ACTIVE' "
                "ORDER BY updated_at ASC"
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"bot control query failed: {exc}") from exc
        finally:
            conn.close()
        return [
            {"user_id": row["user_id"], "config": json.loads(row["config"] or "{}")}
            for row in rows
        ]
