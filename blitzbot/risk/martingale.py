"""Session risk state — martingale sizing, safety stop and daily goal.

Pure bookkeeping, no I/O.  Transitions happen only when a position closes;
the execution loop reads ``should_stop`` and ``amount_for_next_trade``.
"""

import logging
from typing import Optional

from blitzbot.models.bot_config import BotConfig

logger = logging.getLogger("blitzbot")

WIN = "WIN"
LOSS = "LOSS"
TIE = "TIE"


def classify_outcome(pnl: float) -> str:
    """Map realised P&L to WIN / LOSS / TIE."""
    if pnl > 0:
        return WIN
    if pnl < 0:
        return LOSS
    return TIE


class RiskState:
    """Per-session risk state.

    ``should_stop`` latches: once a safety stop or the daily goal trips it,
    it stays set for the rest of the session.
    """

    def __init__(self) -> None:
        self.consecutive_losses: int = 0
        self.total_consecutive_losses: int = 0
        self.current_leverage_amount: Optional[float] = None
        self.session_profit: float = 0.0
        self.should_stop: bool = False
        self.stop_reason: Optional[str] = None
        self.trades: int = 0
        self.wins: int = 0
        self.losses: int = 0
        self.ties: int = 0

    # ── Mutation ─────────────────────────────────────────────────────────

    def record_close(self, pnl: float, config: BotConfig) -> str:
        """Apply one position close and return its outcome.

        Args:
            pnl: Realised profit (positive), loss (negative) or zero.
            config: Session config in force at close time.
        """
        outcome = classify_outcome(pnl)
        self.trades += 1

        if outcome == LOSS:
            self.losses += 1
            self.consecutive_losses += 1
            self.total_consecutive_losses += 1
            self.session_profit += pnl
            if config.leverage_enabled:
                self.current_leverage_amount = (
                    config.base_amount * config.leverage_factor ** self.consecutive_losses
                )
            else:
                self.current_leverage_amount = None
            if (
                config.safety_stop_enabled
                and self.total_consecutive_losses >= config.safety_stop_threshold
            ):
                self._latch_stop(
                    f"safety stop: {self.total_consecutive_losses} consecutive losses"
                )

        elif outcome == WIN:
            self.wins += 1
            self.consecutive_losses = 0
            self.total_consecutive_losses = 0
            self.current_leverage_amount = None
            self.session_profit += pnl
            if config.daily_goal_enabled and self.session_profit >= config.daily_goal_amount:
                self._latch_stop(
                    f"daily goal reached: {self.session_profit:.2f} >= "
                    f"{config.daily_goal_amount:.2f}"
                )

        else:
            self.ties += 1

        return outcome

    def _latch_stop(self, reason: str) -> None:
        if self.should_stop:
            return
        self.should_stop = True
        self.stop_reason = reason
        logger.warning("Risk stop engaged: %s", reason)

    # ── Queries ──────────────────────────────────────────────────────────

    def amount_for_next_trade(self, config: BotConfig) -> float:
        """Leveraged amount after a losing streak, otherwise the base amount."""
        amount = self.current_leverage_amount
        if amount is None:
            amount = config.base_amount
        return max(amount, 0.0)

    @property
    def win_rate(self) -> float:
        decided = self.wins + self.losses
        return (self.wins / decided * 100.0) if decided else 0.0

    def snapshot(self) -> dict:
        return {
            "consecutive_losses": self.consecutive_losses,
            "total_consecutive_losses": self.total_consecutive_losses,
            "current_leverage_amount": self.current_leverage_amount,
            "session_profit": round(self.session_profit, 2),
            "should_stop": self.should_stop,
            "stop_reason": self.stop_reason,
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "ties": self.ties,
            "win_rate": round(self.win_rate, 2),
        }
