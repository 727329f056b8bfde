"""Market scanner — evaluates a universe of instruments in bounded batches.

Instruments are processed 20 at a time with a short pause between batches
to respect gateway rate limits.  Within a batch every candle fetch and
evaluation runs concurrently; one instrument failing never fails the batch.
"""

import asyncio
import logging
import time
from typing import Optional

from blitzbot.broker.models import Instrument
from blitzbot.strategy.models import Signal, StrategyName
from blitzbot.strategy.registry import evaluate_strategy

logger = logging.getLogger("blitzbot")

BATCH_SIZE = 20
BATCH_DELAY_SECONDS = 0.3
CANDLE_TIMEFRAME_SECONDS = 60
CANDLE_COUNT = 50


class MarketScanner:
    """Ranks directional signals across many instruments.

    Args:
        broker: A ``BrokerClient`` (or compatible duck-type / mock).
        batch_size: Instruments evaluated concurrently per batch.
        batch_delay: Seconds to wait between batches.
        timeframe_seconds: Candle size requested for each instrument.
        candle_count: Candles requested for each instrument.
    """

    def __init__(
        self,
        broker,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        timeframe_seconds: int = CANDLE_TIMEFRAME_SECONDS,
        candle_count: int = CANDLE_COUNT,
    ) -> None:
        self._broker = broker
        self._batch_size = batch_size
        self._batch_delay = batch_delay
        self._timeframe = timeframe_seconds
        self._count = candle_count
        self.last_signals: list[Signal] = []

    async def _analyze(
        self,
        instrument: Instrument,
        strategy: StrategyName,
    ) -> Optional[Signal]:
        try:
            candles = await self._broker.fetch_candles(
                instrument.id, self._timeframe, self._count,
            )
            return evaluate_strategy(strategy, candles, instrument.id, instrument.name)
        except Exception as exc:
            logger.debug("Scan of %s skipped: %s", instrument.name, exc)
            return None

    async def scan(
        self,
        instruments: list[Instrument],
        now: float,
        strategy: "str | StrategyName" = StrategyName.BALANCED,
    ) -> list[Signal]:
        """Evaluate *instruments* and return signals sorted by confidence.

        Only instruments tradable at *now* (with at least one available
        expiration) are evaluated.
        """
        strategy = StrategyName(strategy)
        tradable = [i for i in instruments if i.tradable]
        logger.info("Scanning %d instruments (%s)", len(tradable), strategy.value)

        started = time.monotonic()
        results: list[Optional[Signal]] = []
        for start in range(0, len(tradable), self._batch_size):
            batch = tradable[start:start + self._batch_size]
            results.extend(
                await asyncio.gather(*(self._analyze(i, strategy) for i in batch))
            )
            if start + self._batch_size < len(tradable):
                await asyncio.sleep(self._batch_delay)

        signals = sorted(
            (s for s in results if s is not None),
            key=lambda s: s.confidence,
            reverse=True,
        )
        logger.info(
            "Scan finished in %.1fs: %d signal(s)", time.monotonic() - started, len(signals),
        )
        self.last_signals = signals
        return signals
