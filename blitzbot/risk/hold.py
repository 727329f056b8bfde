"""Asset hold tracker — per-instrument loss streaks and temporary bans.

After ``max_consecutive_losses`` losses in a row an instrument is blocked
for ``hold_seconds``.  Expired holds are evicted lazily on the next check.
Pure bookkeeping, no I/O.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("blitzbot")

MAX_CONSECUTIVE_LOSSES = 2
HOLD_SECONDS = 5 * 60


@dataclass
class HoldEntry:
    consecutive_losses: int = 0
    blocked_until: Optional[float] = None
    instrument_name: str = ""


class AssetHoldTracker:
    """Tracks consecutive losses and hold windows per instrument.

    Args:
        max_consecutive_losses: Losses in a row that trigger a hold.
        hold_seconds: Length of the hold window.
    """

    def __init__(
        self,
        max_consecutive_losses: int = MAX_CONSECUTIVE_LOSSES,
        hold_seconds: float = HOLD_SECONDS,
    ) -> None:
        self._max_losses = max_consecutive_losses
        self._hold_seconds = hold_seconds
        self._entries: dict[int, HoldEntry] = {}

    # ── Mutation ─────────────────────────────────────────────────────────

    def record_loss(self, instrument_id: int, instrument_name: str, now: float) -> bool:
        """Count a loss; return ``True`` when this loss starts a hold."""
        entry = self._entries.setdefault(instrument_id, HoldEntry())
        entry.instrument_name = instrument_name
        entry.consecutive_losses += 1
        logger.info(
            "%s: %d consecutive loss(es)", instrument_name, entry.consecutive_losses,
        )
        if entry.consecutive_losses >= self._max_losses and (
            entry.blocked_until is None or now >= entry.blocked_until
        ):
            entry.blocked_until = now + self._hold_seconds
            logger.warning(
                "%s on hold for %d min", instrument_name, self._hold_seconds // 60,
            )
            return True
        return False

    def record_win(self, instrument_id: int) -> None:
        """Clear the loss streak for *instrument_id*."""
        entry = self._entries.get(instrument_id)
        if entry is None:
            return
        entry.consecutive_losses = 0
        if entry.blocked_until is None:
            del self._entries[instrument_id]

    # ── Queries ──────────────────────────────────────────────────────────

    def check_hold(self, instrument_id: int, now: float) -> bool:
        """Return ``True`` while *instrument_id* is blocked.

        An expired hold is evicted (loss counter included) when observed.
        """
        entry = self._entries.get(instrument_id)
        if entry is None or entry.blocked_until is None:
            return False
        if now < entry.blocked_until:
            remaining_min = math.ceil((entry.blocked_until - now) / 60)
            logger.debug(
                "%s on hold, %d min remaining", entry.instrument_name or instrument_id,
                remaining_min,
            )
            return True
        del self._entries[instrument_id]
        return False

    def consecutive_losses(self, instrument_id: int) -> int:
        entry = self._entries.get(instrument_id)
        return entry.consecutive_losses if entry else 0

    def blocked(self, now: float) -> list[dict]:
        """List active holds without evicting anything."""
        return [
            {
                "instrument_id": iid,
                "instrument_name": e.instrument_name,
                "consecutive_losses": e.consecutive_losses,
                "blocked_until": e.blocked_until,
            }
            for iid, e in self._entries.items()
            if e.blocked_until is not None and now < e.blocked_until
        ]
