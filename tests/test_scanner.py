"""Tests for the batched market scanner."""

import asyncio

import pytest

from blitzbot import scanner as scanner_module
from blitzbot.broker.models import Instrument
from blitzbot.errors import ConnectionFailure
from blitzbot.scanner import MarketScanner
from blitzbot.strategy.models import Candle, Signal


def _falling(n: int = 50) -> list[Candle]:
    closes = [100.0 - i * 0.5 for i in range(n)]
    return [
        Candle(open=c + 0.5, high=c + 0.6, low=c - 0.1, close=c, timestamp=i * 60)
        for i, c in enumerate(closes)
    ]


class MockBroker:
    """Duck-typed BrokerClient exposing only candle fetching."""

    def __init__(self, failing: tuple[int, ...] = ()) -> None:
        self._failing = failing
        self.requests: list[tuple[int, int, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_candles(self, instrument_id: int, timeframe_seconds: int, count: int = 50):
        self.requests.append((instrument_id, timeframe_seconds, count))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if instrument_id in self._failing:
                raise ConnectionFailure(f"instrument {instrument_id} unavailable")
            return _falling()
        finally:
            self.in_flight -= 1


def _instruments(n: int) -> list[Instrument]:
    return [Instrument(id=i, name=f"ASSET-{i}", expirations=(30, 60)) for i in range(1, n + 1)]


class TestMarketScanner:
    @pytest.mark.asyncio
    async def test_scan_returns_signals_for_every_instrument(self):
        broker = MockBroker()
        scanner = MarketScanner(broker, batch_delay=0)
        signals = await scanner.scan(_instruments(3), now=0.0, strategy="aggressive")
        assert [s.direction for s in signals] == ["CALL"] * 3
        assert {s.instrument_name for s in signals} == {"ASSET-1", "ASSET-2", "ASSET-3"}
        assert broker.requests[0] == (1, 60, 50)
        assert scanner.last_signals == signals

    @pytest.mark.asyncio
    async def test_batches_bound_concurrency(self):
        broker = MockBroker()
        scanner = MarketScanner(broker, batch_size=2, batch_delay=0)
        await scanner.scan(_instruments(5), now=0.0, strategy="aggressive")
        assert len(broker.requests) == 5
        assert broker.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_fail_the_batch(self):
        broker = MockBroker(failing=(2,))
        scanner = MarketScanner(broker, batch_delay=0)
        signals = await scanner.scan(_instruments(3), now=0.0, strategy="aggressive")
        assert sorted(s.instrument_id for s in signals) == [1, 3]

    @pytest.mark.asyncio
    async def test_untradable_instruments_skipped(self):
        broker = MockBroker()
        scanner = MarketScanner(broker, batch_delay=0)
        instruments = _instruments(2) + [Instrument(id=9, name="CLOSED", expirations=())]
        await scanner.scan(instruments, now=0.0, strategy="aggressive")
        assert 9 not in [r[0] for r in broker.requests]

    @pytest.mark.asyncio
    async def test_sorted_by_confidence_descending(self, monkeypatch):
        def _fake_evaluate(strategy, candles, instrument_id, instrument_name):
            if instrument_id == 4:
                return None
            return Signal(
                instrument_id=instrument_id,
                instrument_name=instrument_name,
                direction="PUT",
                confidence={1: 55.0, 2: 80.0, 3: 62.0}[instrument_id],
                strategy_name=strategy.value,
                current_price=candles[-1].close,
            )

        monkeypatch.setattr(scanner_module, "evaluate_strategy", _fake_evaluate)
        scanner = MarketScanner(MockBroker(), batch_delay=0)
        signals = await scanner.scan(_instruments(4), now=0.0, strategy="hybrid")
        assert [s.instrument_id for s in signals] == [2, 3, 1]
        assert signals[0].strategy_name == "hybrid"

    @pytest.mark.asyncio
    async def test_empty_universe(self):
        scanner = MarketScanner(MockBroker(), batch_delay=0)
        assert await scanner.scan([], now=0.0) == []
