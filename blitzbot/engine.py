"""BlitzBot — per-user trading session (execution loop).

Connects scanner, strategy, risk management and broker into a single tick
loop.  Each tick opens at most one position; the broker pushes position
closes onto a queue consumed by a dedicated handler task, which is the only
writer of the risk and hold state.
"""

import asyncio
import enum
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from blitzbot.api.routers import push_event, update_live_signals, update_session_status
from blitzbot.broker.models import ClosedPosition, Instrument
from blitzbot.errors import (
    ConnectionFailure,
    InvalidCandle,
    OrderSubmissionFailure,
    PersistenceFailure,
)
from blitzbot.models.bot_config import BotConfig
from blitzbot.risk.expiry import ExpiryPolicy, select_expiration
from blitzbot.risk.hold import AssetHoldTracker
from blitzbot.risk.martingale import LOSS, WIN, RiskState
from blitzbot.scanner import CANDLE_COUNT, CANDLE_TIMEFRAME_SECONDS, MarketScanner
from blitzbot.strategy.models import Signal
from blitzbot.strategy.registry import evaluate_strategy

logger = logging.getLogger("blitzbot")

TICK_INTERVAL_SECONDS = 2.0
ERROR_BACKOFF_SECONDS = 10.0
COOLDOWN_SECONDS = 2.0


class SessionState(str, enum.Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"


@dataclass
class OpenPositionHandle:
    """The single position a session may hold at a time."""

    external_id: str
    instrument_id: int
    instrument_name: str
    direction: str
    amount: float
    opened_at: float
    expires_at: float


class TradingSession:
    """Runs one user's trading loop.

    Args:
        user_id: Account the session trades for.
        config: Session ``BotConfig``.
        broker: A connected ``BrokerClient`` (or compatible duck-type / mock).
            Optional when *broker_factory* is given.
        broker_factory: Builds a broker from a session token during
            :meth:`connect`.
        token_provider: Object with ``async get_session_token(user_id)``.
        trade_repo: ``TradeRepo`` for open/close records; ``None`` disables
            persistence.
        expiry_policy: Confidence tiers for auto-mode expirations.
        clock: Returns the current epoch time; injectable for tests.
    """

    def __init__(
        self,
        user_id: str,
        config: BotConfig,
        broker=None,
        broker_factory: Optional[Callable[[Optional[str]], object]] = None,
        token_provider=None,
        trade_repo=None,
        scanner: Optional[MarketScanner] = None,
        expiry_policy: Optional[ExpiryPolicy] = None,
        clock: Callable[[], float] = time.time,
        tick_interval: float = TICK_INTERVAL_SECONDS,
        error_backoff: float = ERROR_BACKOFF_SECONDS,
        cooldown_seconds: float = COOLDOWN_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.config = config
        self._broker = broker
        self._broker_factory = broker_factory
        self._token_provider = token_provider
        self._trade_repo = trade_repo
        self._scanner = scanner
        self._expiry_policy = expiry_policy or ExpiryPolicy()
        self._clock = clock
        self._tick_interval = tick_interval
        self._error_backoff = error_backoff
        self._cooldown_seconds = cooldown_seconds

        self.state = SessionState.IDLE
        self.risk = RiskState()
        self.holds = AssetHoldTracker()
        self.open_position: Optional[OpenPositionHandle] = None
        self._cooldown_until: float = 0.0
        self._close_queue: asyncio.Queue = asyncio.Queue()
        self._close_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._running: bool = False
        self._cycle_count: int = 0

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    async def connect(self) -> None:
        """Open the broker session, fetch the balance and subscribe to closes.

        On failure the session returns to ``IDLE`` and ``ConnectionFailure``
        is raised with a ``reason`` code.
        """
        self.state = SessionState.CONNECTING
        update_session_status(self.user_id, state=self.state.value)
        try:
            token = None
            if self._token_provider is not None:
                token = await self._token_provider.get_session_token(self.user_id)
                if token is None:
                    raise ConnectionFailure(
                        f"no session token for user {self.user_id}",
                        reason="no_session_token",
                    )
            if self._broker_factory is not None:
                self._broker = self._broker_factory(token)
            if self._broker is None:
                raise ConnectionFailure("no broker configured")
            if self._scanner is None:
                self._scanner = MarketScanner(self._broker)

            balance = await self._broker.fetch_balance()
            self._broker.subscribe_position_close(self.on_position_closed)
        except ConnectionFailure as exc:
            logger.warning("Session %s failed to connect: %s", self.user_id, exc)
            self.state = SessionState.IDLE
            update_session_status(self.user_id, state=self.state.value, running=False)
            raise

        self._close_task = asyncio.create_task(self._consume_closes())
        self._stop_event.clear()
        self._running = True
        self.state = SessionState.RUNNING
        update_session_status(
            self.user_id,
            state=self.state.value,
            running=True,
            mode=self.config.mode,
            strategy=self.config.strategy,
            balance=balance.amount,
            currency=balance.currency,
            started_at=self._clock(),
            risk=self.risk.snapshot(),
        )
        logger.info(
            "Session %s connected (balance %.2f %s, %s/%s)",
            self.user_id, balance.amount, balance.currency,
            self.config.mode, self.config.strategy,
        )

    def stop(self) -> None:
        """Signal the loop to exit after the current tick."""
        if not self._running:
            return
        self._running = False
        self.state = SessionState.STOPPING
        self._stop_event.set()
        update_session_status(self.user_id, state=self.state.value)
        logger.info("Stop signal sent to session %s.", self.user_id)

    def reconfigure(self, config: BotConfig) -> None:
        """Swap the session config; risk and hold state are kept."""
        self.config = config
        update_session_status(self.user_id, mode=config.mode, strategy=config.strategy)
        logger.info(
            "Session %s reconfigured: %s/%s base %.2f",
            self.user_id, config.mode, config.strategy, config.base_amount,
        )

    async def _teardown(self) -> None:
        if self._close_task is not None:
            self._close_task.cancel()
            try:
                await self._close_task
            except asyncio.CancelledError:
                pass
            self._close_task = None
        close = getattr(self._broker, "close", None)
        if close is not None:
            await close()
        self.state = SessionState.STOPPED
        update_session_status(self.user_id, state=self.state.value, running=False)
        push_event("status_changed", self.user_id, state=self.state.value)

    # ── Tick loop ────────────────────────────────────────────────────────

    async def run(self, max_cycles: int = 0) -> list[dict]:
        """Tick until stopped.

        Args:
            max_cycles: Stop after this many ticks (0 = unlimited).

        Returns:
            List of per-tick result dicts.
        """
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            self._cycle_count += 1
            delay = self._tick_interval
            try:
                result = await self.run_once()
                results.append(result)
                logger.debug(
                    "Session %s cycle %d: %s", self.user_id, cycle, result.get("action"),
                )
            except Exception as exc:
                logger.error("Session %s cycle %d error: %s", self.user_id, cycle, exc)
                results.append({"action": "error", "reason": str(exc)})
                delay = self._error_backoff
            update_session_status(
                self.user_id,
                cycle_count=self._cycle_count,
                last_cycle_at=self._clock(),
            )

            if max_cycles > 0 and cycle >= max_cycles:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        self._running = False
        await self._teardown()
        return results

    # ── Single tick ──────────────────────────────────────────────────────

    async def _gather_signals(
        self,
        config: BotConfig,
        instruments: dict[int, Instrument],
        now: float,
    ) -> list[Signal]:
        if config.mode == "manual":
            instrument = instruments.get(config.manual_asset)
            name = instrument.name if instrument else f"ID-{config.manual_asset}"
            candles = await self._broker.fetch_candles(
                config.manual_asset, CANDLE_TIMEFRAME_SECONDS, CANDLE_COUNT,
            )
            signal = evaluate_strategy(config.strategy, candles, config.manual_asset, name)
            return [signal] if signal else []

        signals = await self._scanner.scan(list(instruments.values()), now, config.strategy)
        update_live_signals(self.user_id, signals)
        # Hold filter, auto mode only
        return [s for s in signals if not self.holds.check_hold(s.instrument_id, now)]

    async def run_once(self, now: Optional[float] = None) -> dict:
        """Execute one tick.

        Returns a dict describing the action taken:

        - ``{"action": "skipped", "reason": "..."}``
        - ``{"action": "order_placed", ...}``

        Args:
            now: Current epoch time.  Defaults to the session clock.
        """
        if now is None:
            now = self._clock()
        config = self.config

        # 1 ── Risk stop
        if self.risk.should_stop:
            return {"action": "skipped", "reason": "should_stop"}

        # 2 ── One position at a time
        if self.open_position is not None:
            return {"action": "skipped", "reason": "position_open"}

        # 3 ── Post-close cooldown
        if now < self._cooldown_until:
            return {"action": "skipped", "reason": "cooldown"}

        # 4 ── Signals
        try:
            instruments = {
                i.id: i for i in await self._broker.list_available_instruments(now)
            }
            signals = await self._gather_signals(config, instruments, now)
        except (ConnectionFailure, InvalidCandle) as exc:
            logger.warning("Session %s: market data unavailable: %s", self.user_id, exc)
            return {"action": "skipped", "reason": "market_data_unavailable"}

        if not signals:
            return {"action": "skipped", "reason": "no_signal"}

        # 5 ── Expiration + sizing
        signal = signals[0]
        instrument = instruments.get(signal.instrument_id)
        expiration = select_expiration(
            signal.confidence,
            instrument.expirations if instrument else (),
            policy=self._expiry_policy,
            manual_timeframe=config.manual_timeframe if config.mode == "manual" else None,
        )
        amount = self.risk.amount_for_next_trade(config)

        # 6 ── Submit
        try:
            receipt = await self._broker.submit_order(
                signal.instrument_id, signal.direction, expiration, amount,
            )
        except OrderSubmissionFailure as exc:
            logger.error(
                "Session %s: order on %s failed: %s",
                self.user_id, signal.instrument_name, exc,
            )
            return {"action": "skipped", "reason": "order_failed"}

        handle = OpenPositionHandle(
            external_id=receipt.order_id,
            instrument_id=signal.instrument_id,
            instrument_name=signal.instrument_name,
            direction=signal.direction,
            amount=amount,
            opened_at=now,
            expires_at=receipt.expires_at,
        )
        self.open_position = handle
        logger.info(
            "Session %s opened %s %s %.2f for %ds (confidence %.0f, %s)",
            self.user_id, signal.direction, signal.instrument_name, amount,
            expiration, signal.confidence, signal.strategy_name,
        )

        # 7 ── Persist immediately, not after settlement
        if self._trade_repo is not None:
            try:
                self._trade_repo.insert_open(
                    user_id=self.user_id,
                    external_id=handle.external_id,
                    instrument_id=handle.instrument_id,
                    instrument_name=handle.instrument_name,
                    direction=handle.direction,
                    amount=amount,
                    strategy=signal.strategy_name,
                    confidence=signal.confidence,
                    indicators=signal.indicators,
                    expiration_seconds=expiration,
                    opened_at=now,
                    expires_at=receipt.expires_at,
                )
            except PersistenceFailure as exc:
                logger.error("Session %s: trade %s not saved: %s", self.user_id, handle.external_id, exc)

        push_event(
            "position_opened", self.user_id,
            **asdict(handle),
            expiration_seconds=expiration,
            confidence=signal.confidence,
            strategy=signal.strategy_name,
        )
        update_session_status(self.user_id, open_position=asdict(handle), last_order_at=now)

        return {
            "action": "order_placed",
            "order_id": receipt.order_id,
            "instrument_id": signal.instrument_id,
            "instrument_name": signal.instrument_name,
            "direction": signal.direction,
            "amount": amount,
            "expiration": expiration,
            "confidence": signal.confidence,
            "strategy": signal.strategy_name,
        }

    # ── Position close ───────────────────────────────────────────────────

    def on_position_closed(self, position: ClosedPosition) -> None:
        """Broker callback: queue the close for the handler task."""
        self._close_queue.put_nowait(position)

    async def _consume_closes(self) -> None:
        while True:
            position = await self._close_queue.get()
            try:
                await self.handle_close(position)
            except Exception:
                logger.exception(
                    "Session %s: close of %s not processed", self.user_id, position.external_id,
                )

    async def handle_close(self, position: ClosedPosition, now: Optional[float] = None) -> Optional[str]:
        """Apply a position close to the session.

        Returns the outcome, or ``None`` when the close does not belong to
        the open position.
        """
        if now is None:
            now = self._clock()
        handle = self.open_position
        if handle is None or handle.external_id != position.external_id:
            logger.info(
                "Session %s: close for untracked position %s ignored",
                self.user_id, position.external_id,
            )
            return None

        self.open_position = None
        self._cooldown_until = now + self._cooldown_seconds

        was_stopped = self.risk.should_stop
        outcome = self.risk.record_close(position.pnl, self.config)
        if outcome == LOSS:
            self.holds.record_loss(handle.instrument_id, handle.instrument_name, now)
        elif outcome == WIN:
            self.holds.record_win(handle.instrument_id)

        logger.info(
            "Session %s: %s %s on %s (pnl %.2f, session %.2f)",
            self.user_id, outcome, handle.direction, handle.instrument_name,
            position.pnl, self.risk.session_profit,
        )

        if self._trade_repo is not None:
            try:
                self._trade_repo.close_trade(
                    external_id=position.external_id,
                    result=outcome,
                    pnl=position.pnl,
                    exit_price=position.close_price,
                    status=position.status,
                    closed_at=now,
                )
            except PersistenceFailure as exc:
                logger.error(
                    "Session %s: result of %s not saved: %s",
                    self.user_id, position.external_id, exc,
                )

        push_event(
            "position_closed", self.user_id,
            external_id=position.external_id,
            instrument_id=handle.instrument_id,
            instrument_name=handle.instrument_name,
            direction=handle.direction,
            result=outcome,
            pnl=position.pnl,
            session_profit=round(self.risk.session_profit, 2),
        )
        update_session_status(
            self.user_id,
            open_position=None,
            risk=self.risk.snapshot(),
            holds=self.holds.blocked(now),
        )
        if self.risk.should_stop and not was_stopped:
            push_event(
                "status_changed", self.user_id,
                state=self.state.value, should_stop=True, reason=self.risk.stop_reason,
            )
        return outcome

    # ── Status ───────────────────────────────────────────────────────────

    def status(self, now: Optional[float] = None) -> dict:
        now = self._clock() if now is None else now
        return {
            "user_id": self.user_id,
            "state": self.state.value,
            "running": self._running,
            "config": self.config.to_dict(),
            "open_position": asdict(self.open_position) if self.open_position else None,
            "cooldown_until": self._cooldown_until,
            "risk": self.risk.snapshot(),
            "holds": self.holds.blocked(now),
            "cycle_count": self._cycle_count,
        }
