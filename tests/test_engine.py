"""Tests for the per-user trading session.

Verifies the tick flow: instruments → scan → hold filter → expiration →
sizing → order, plus close handling, cooldown and risk stops.  Uses a mock
broker to avoid real gateway calls.
"""

import asyncio

import pytest

from blitzbot.api import routers
from blitzbot.broker.models import Balance, ClosedPosition, Instrument, OrderReceipt
from blitzbot.engine import SessionState, TradingSession
from blitzbot.errors import ConnectionFailure, OrderSubmissionFailure
from blitzbot.models.bot_config import BotConfig
from blitzbot.repos.db import init_db
from blitzbot.repos.trade_repo import TradeRepo
from blitzbot.scanner import MarketScanner
from blitzbot.strategy.models import Candle


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_router_state():
    routers.reset_state()
    yield
    routers.reset_state()


def _falling(n: int = 50) -> list[Candle]:
    """Strictly falling closes: RSI 0, aggressive CALL at 70."""
    return [
        Candle(open=100.5 - i * 0.5, high=100.6 - i * 0.5, low=99.9 - i * 0.5,
               close=100.0 - i * 0.5, timestamp=i * 60)
        for i in range(n)
    ]


def _choppy(n: int = 50) -> list[Candle]:
    """Alternating closes: RSI near 50, no aggressive signal."""
    closes = [100.0 + (1.0 if i % 2 else -1.0) for i in range(n)]
    return [Candle(c, c + 0.1, c - 0.1, c, i * 60) for i, c in enumerate(closes)]


def _bot_config(**overrides) -> BotConfig:
    values = {"strategy": "aggressive", "base_amount": 1.0}
    values.update(overrides)
    return BotConfig.from_dict(values)


def _loss(external_id: str) -> ClosedPosition:
    return ClosedPosition(external_id, "closed", -1.0, 99.0, 100.0)


def _win(external_id: str) -> ClosedPosition:
    return ClosedPosition(external_id, "closed", 0.85, 101.0, 100.0)


def _event_types() -> list[str]:
    return [e["type"] for e in routers._events]


# ── Mock broker ──────────────────────────────────────────────────────────


class MockBroker:
    """Duck-typed BrokerClient replacement for session tests."""

    def __init__(self, instruments=None, candles=None, fail_orders: bool = False) -> None:
        self.instruments = instruments if instruments is not None else [
            Instrument(1, "EURUSD-OTC", (30, 60, 120)),
        ]
        self.candles = candles if candles is not None else {1: _falling()}
        self.fail_orders = fail_orders
        self.fail_listing: list[Exception] = []
        self.orders: list[dict] = []
        self.candle_requests: list[tuple] = []
        self.callback = None
        self.closed = False

    async def list_available_instruments(self, as_of: float):
        if self.fail_listing:
            raise self.fail_listing.pop(0)
        return list(self.instruments)

    async def fetch_candles(self, instrument_id: int, timeframe_seconds: int, count: int = 50):
        self.candle_requests.append((instrument_id, timeframe_seconds, count))
        return self.candles.get(instrument_id, _choppy())

    async def fetch_balance(self):
        return Balance(amount=500.0, currency="USD")

    def subscribe_position_close(self, callback):
        self.callback = callback

    async def submit_order(self, instrument_id, direction, timeframe_seconds, amount):
        if self.fail_orders:
            raise OrderSubmissionFailure("market closed")
        self.orders.append({
            "instrument_id": instrument_id,
            "direction": direction,
            "timeframe": timeframe_seconds,
            "amount": amount,
        })
        return OrderReceipt(
            order_id=f"pos-{len(self.orders)}",
            expires_at=1000.0 + timeframe_seconds,
            expected_profit=amount * 0.85,
        )

    async def close(self):
        self.closed = True


class MockTokenProvider:
    def __init__(self, token=None) -> None:
        self.token = token
        self.requested: list[str] = []

    async def get_session_token(self, user_id: str):
        self.requested.append(user_id)
        return self.token


def _make_session(broker: MockBroker, config: BotConfig = None, **kwargs) -> TradingSession:
    return TradingSession(
        "u1",
        config or _bot_config(),
        broker=broker,
        scanner=MarketScanner(broker, batch_delay=0),
        **kwargs,
    )


# ── Tick tests ───────────────────────────────────────────────────────────


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_places_order_end_to_end(self):
        """Falling series → aggressive CALL 70 → 60s expiration at base amount."""
        broker = MockBroker()
        session = _make_session(broker)

        result = await session.run_once(now=1000.0)

        assert result["action"] == "order_placed"
        assert result["direction"] == "CALL"
        assert result["confidence"] == 70.0
        assert result["expiration"] == 60
        assert result["amount"] == 1.0
        assert result["strategy"] == "aggressive"
        assert broker.orders == [
            {"instrument_id": 1, "direction": "CALL", "timeframe": 60, "amount": 1.0}
        ]
        assert session.open_position.external_id == "pos-1"
        assert "position_opened" in _event_types()
        assert routers._live_signals["u1"][0]["instrument_name"] == "EURUSD-OTC"

    @pytest.mark.asyncio
    async def test_one_position_at_a_time(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.run_once(now=1000.0)

        result = await session.run_once(now=1001.0)

        assert result == {"action": "skipped", "reason": "position_open"}
        assert len(broker.orders) == 1

    @pytest.mark.asyncio
    async def test_no_signal(self):
        broker = MockBroker(candles={1: _choppy()})
        session = _make_session(broker)
        result = await session.run_once(now=1000.0)
        assert result == {"action": "skipped", "reason": "no_signal"}
        assert broker.orders == []

    @pytest.mark.asyncio
    async def test_market_data_unavailable(self):
        broker = MockBroker()
        broker.fail_listing.append(ConnectionFailure("gateway down"))
        session = _make_session(broker)
        result = await session.run_once(now=1000.0)
        assert result == {"action": "skipped", "reason": "market_data_unavailable"}

    @pytest.mark.asyncio
    async def test_order_failure_leaves_no_position(self):
        broker = MockBroker(fail_orders=True)
        session = _make_session(broker)
        result = await session.run_once(now=1000.0)
        assert result == {"action": "skipped", "reason": "order_failed"}
        assert session.open_position is None
        assert "position_opened" not in _event_types()

    @pytest.mark.asyncio
    async def test_leveraged_amount_after_loss(self):
        broker = MockBroker()
        session = _make_session(broker, _bot_config(leverage_enabled=True, leverage_factor=2.0))
        await session.run_once(now=1000.0)
        await session.handle_close(_loss("pos-1"), now=1060.0)

        result = await session.run_once(now=1070.0)

        assert result["amount"] == 2.0
        assert broker.orders[-1]["amount"] == 2.0


# ── Close handling ───────────────────────────────────────────────────────


class TestHandleClose:
    @pytest.mark.asyncio
    async def test_cooldown_after_close(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.run_once(now=1000.0)

        outcome = await session.handle_close(_win("pos-1"), now=1060.0)

        assert outcome == "WIN"
        assert session.open_position is None
        assert await session.run_once(now=1061.0) == {"action": "skipped", "reason": "cooldown"}
        assert (await session.run_once(now=1062.0))["action"] == "order_placed"

    @pytest.mark.asyncio
    async def test_untracked_close_ignored(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.run_once(now=1000.0)

        assert await session.handle_close(_loss("someone-else"), now=1060.0) is None
        assert session.open_position.external_id == "pos-1"
        assert session.risk.trades == 0

    @pytest.mark.asyncio
    async def test_two_losses_hold_instrument(self):
        broker = MockBroker(
            instruments=[
                Instrument(1, "EURUSD-OTC", (30, 60)),
                Instrument(2, "GBPUSD-OTC", (30, 60)),
            ],
            candles={1: _falling(), 2: _falling()},
        )
        session = _make_session(broker)

        for now in (1000.0, 1100.0):
            result = await session.run_once(now=now)
            assert result["instrument_id"] == 1
            await session.handle_close(_loss(result["order_id"]), now=now + 60)

        assert session.holds.check_hold(1, now=1200.0) is True
        result = await session.run_once(now=1200.0)
        assert result["instrument_id"] == 2

    @pytest.mark.asyncio
    async def test_safety_stop_blocks_new_orders(self):
        broker = MockBroker()
        config = _bot_config(safety_stop_enabled=True, safety_stop_threshold=2)
        session = _make_session(broker, config)

        for now in (1000.0, 1100.0):
            result = await session.run_once(now=now)
            await session.handle_close(_loss(result["order_id"]), now=now + 60)

        assert session.risk.should_stop is True
        assert await session.run_once(now=1300.0) == {"action": "skipped", "reason": "should_stop"}
        stop_events = [e for e in routers._events if e["type"] == "status_changed"]
        assert len(stop_events) == 1
        assert stop_events[0]["should_stop"] is True

    @pytest.mark.asyncio
    async def test_tie_keeps_streak(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.run_once(now=1000.0)
        await session.handle_close(_loss("pos-1"), now=1060.0)
        await session.run_once(now=1100.0)

        outcome = await session.handle_close(
            ClosedPosition("pos-2", "closed", 0.0, 100.0, 100.0), now=1160.0,
        )

        assert outcome == "TIE"
        assert session.holds.consecutive_losses(1) == 1
        assert session.risk.consecutive_losses == 1


# ── Manual mode ──────────────────────────────────────────────────────────


class TestManualMode:
    @pytest.mark.asyncio
    async def test_manual_mode_uses_asset_and_timeframe(self):
        broker = MockBroker()
        config = _bot_config(mode="manual", manual_asset=1, manual_timeframe=300)
        session = _make_session(broker, config)

        result = await session.run_once(now=1000.0)

        assert result["action"] == "order_placed"
        assert result["expiration"] == 300
        assert broker.candle_requests == [(1, 60, 50)]

    @pytest.mark.asyncio
    async def test_manual_mode_ignores_holds(self):
        broker = MockBroker()
        config = _bot_config(mode="manual", manual_asset=1, manual_timeframe=60)
        session = _make_session(broker, config)
        session.holds.record_loss(1, "EURUSD-OTC", now=900.0)
        session.holds.record_loss(1, "EURUSD-OTC", now=900.0)

        result = await session.run_once(now=1000.0)

        assert result["instrument_id"] == 1

    @pytest.mark.asyncio
    async def test_manual_asset_missing_from_listing(self):
        broker = MockBroker(instruments=[], candles={7: _falling()})
        config = _bot_config(mode="manual", manual_asset=7, manual_timeframe=60)
        session = _make_session(broker, config)

        result = await session.run_once(now=1000.0)

        assert result["instrument_name"] == "ID-7"
        assert result["expiration"] == 60


# ── Persistence ──────────────────────────────────────────────────────────


class TestPersistence:
    @pytest.mark.asyncio
    async def test_trade_recorded_on_open_and_close(self, tmp_path):
        db_path = str(tmp_path / "trades.db")
        init_db(db_path)
        repo = TradeRepo(db_path)
        broker = MockBroker()
        session = _make_session(broker, trade_repo=repo)

        await session.run_once(now=1000.0)
        trade = repo.get_by_external_id("pos-1")
        assert trade["status"] == "open"
        assert trade["user_id"] == "u1"
        assert trade["expiration_seconds"] == 60

        await session.handle_close(_loss("pos-1"), now=1060.0)
        trade = repo.get_by_external_id("pos-1")
        assert trade["result"] == "LOSS"
        assert trade["pnl"] == -1.0
        assert trade["closed_at"] == 1060.0


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_without_token_fails(self):
        built = []
        session = TradingSession(
            "u1",
            _bot_config(),
            broker_factory=lambda token: built.append(token) or MockBroker(),
            token_provider=MockTokenProvider(token=None),
        )

        with pytest.raises(ConnectionFailure) as exc_info:
            await session.connect()

        assert exc_info.value.reason == "no_session_token"
        assert session.state == SessionState.IDLE
        assert built == []

    @pytest.mark.asyncio
    async def test_connect_builds_broker_from_token(self):
        tokens = []
        broker = MockBroker()

        def _factory(token):
            tokens.append(token)
            return broker

        session = TradingSession(
            "u1", _bot_config(), broker_factory=_factory,
            token_provider=MockTokenProvider(token="ssid-abc"),
        )
        await session.connect()

        assert tokens == ["ssid-abc"]
        assert session.state == SessionState.RUNNING
        assert broker.callback is not None
        assert routers._session_statuses["u1"]["balance"] == 500.0

        session.stop()
        await session.run()
        assert session.state == SessionState.STOPPED
        assert broker.closed is True

    @pytest.mark.asyncio
    async def test_pushed_close_processed_by_handler_task(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.connect()
        await session.run_once(now=1000.0)

        broker.callback(_win("pos-1"))
        for _ in range(10):
            if session.open_position is None:
                break
            await asyncio.sleep(0)

        assert session.open_position is None
        assert session.risk.wins == 1

        session.stop()
        await session.run()

    @pytest.mark.asyncio
    async def test_run_survives_tick_errors_and_tears_down(self):
        broker = MockBroker(candles={1: _choppy()})
        broker.fail_listing.append(RuntimeError("unexpected payload"))
        session = _make_session(broker, tick_interval=0, error_backoff=0)
        await session.connect()

        results = await session.run(max_cycles=2)

        assert results[0] == {"action": "error", "reason": "unexpected payload"}
        assert results[1] == {"action": "skipped", "reason": "no_signal"}
        assert session.state == SessionState.STOPPED
        assert session.running is False
        assert _event_types()[-1] == "status_changed"
        assert routers._session_statuses["u1"]["cycle_count"] == 2

    @pytest.mark.asyncio
    async def test_reconfigure_keeps_risk_state(self):
        broker = MockBroker()
        session = _make_session(broker)
        await session.run_once(now=1000.0)
        await session.handle_close(_loss("pos-1"), now=1060.0)

        session.reconfigure(_bot_config(strategy="hybrid", base_amount=3.0))

        assert session.config.strategy == "hybrid"
        assert session.risk.losses == 1
        assert session.holds.consecutive_losses(1) == 1
        assert session.status(now=1070.0)["config"]["base_amount"] == 3.0
