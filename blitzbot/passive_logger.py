"""Passive signal logger — simulated trades that measure strategy accuracy.

Runs on its own interval, independent of any trading session.  Each tick:

1. orphan recovery: PENDING records whose ``due_at`` has passed are
   resolved now (rate-limited), so records survive process restarts;
2. retention: records older than 30 minutes are purged;
3. scan: every tradable instrument × timeframe is evaluated with the
   hybrid strategy and directional verdicts are stored as PENDING, each with
   a verification scheduled at ``timeframe + grace``.

The persisted ``due_at`` is the source of truth; in-memory timers only cut
latency.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from blitzbot.errors import BlitzBotError
from blitzbot.repos.passive_signal_repo import LOSS, WIN
from blitzbot.strategy.models import CALL, PUT, StrategyName
from blitzbot.strategy.registry import evaluate_strategy

logger = logging.getLogger("blitzbot.passive")

INTERVAL_SECONDS = 10.0
TIMEFRAMES = (10, 30, 60, 300)
GRACE_SECONDS = 2.0
CANDLE_COUNT = 50
VERIFY_CANDLE_COUNT = 5
RECOVERY_LIMIT = 10
RECOVERY_SPACING_SECONDS = 0.2
RETENTION_SECONDS = 30 * 60
SCAN_PACING_SECONDS = 0.05


def resolve_outcome(direction: str, entry_price: float, result_price: float) -> str:
    """CALL wins if the price rose, PUT wins if it fell; anything else loses."""
    if direction == CALL and result_price > entry_price:
        return WIN
    if direction == PUT and result_price < entry_price:
        return WIN
    return LOSS


class PassiveSignalLogger:
    """Records and resolves simulated signals.

    Args:
        broker: ``BrokerClient`` (or duck-type) for instruments and candles.
        repo: ``PassiveSignalRepo``.
        timeframes: Expirations in seconds to evaluate per instrument.
        interval: Seconds between ticks.
        clock: Returns the current epoch time; injectable for tests.
    """

    def __init__(
        self,
        broker,
        repo,
        timeframes: tuple[int, ...] = TIMEFRAMES,
        interval: float = INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        grace_seconds: float = GRACE_SECONDS,
        recovery_spacing: float = RECOVERY_SPACING_SECONDS,
        scan_pacing: float = SCAN_PACING_SECONDS,
    ) -> None:
        self._broker = broker
        self._repo = repo
        self._timeframes = tuple(timeframes)
        self._interval = interval
        self._clock = clock
        self._grace = grace_seconds
        self._recovery_spacing = recovery_spacing
        self._scan_pacing = scan_pacing
        self._pending_tasks: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self._running = False
        self.signals_recorded = 0

    # ── Verification ─────────────────────────────────────────────────────

    async def verify(self, record: dict) -> Optional[str]:
        """Resolve one PENDING record against the latest close.

        Returns the stored outcome, or ``None`` when nothing was written
        (no candles, or the record was already resolved).
        """
        candles = await self._broker.fetch_candles(
            record["instrument_id"], record["timeframe"], VERIFY_CANDLE_COUNT,
        )
        if not candles:
            logger.info("No candles to verify passive signal %s", record["id"])
            return None

        result_price = candles[-1].close
        outcome = resolve_outcome(record["direction"], record["entry_price"], result_price)
        written = self._repo.resolve(
            record["id"],
            outcome,
            result_price=result_price,
            result_timestamp=self._clock(),
            price_diff=result_price - record["entry_price"],
        )
        if not written:
            logger.debug("Passive signal %s already resolved", record["id"])
            return None
        logger.info(
            "Passive %s %s %ds → %s (%.5f → %.5f)",
            record["direction"], record["instrument_name"], record["timeframe"],
            outcome, record["entry_price"], result_price,
        )
        return outcome

    async def _verify_later(self, record: dict, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.verify(record)
        except BlitzBotError as exc:
            # Left PENDING; the recovery sweep picks it up.
            logger.warning("Deferred verification of %s failed: %s", record["id"], exc)
        except Exception:
            logger.exception("Deferred verification of %s crashed", record["id"])

    def _schedule(self, record: dict, delay: float) -> None:
        task = asyncio.create_task(self._verify_later(record, delay))
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    # ── Tick steps ───────────────────────────────────────────────────────

    async def recover_orphans(self, now: float) -> int:
        """Resolve overdue PENDING records.  Returns how many were resolved."""
        records = self._repo.pending_due(now, limit=RECOVERY_LIMIT)
        if not records:
            return 0
        logger.info("Recovering %d overdue passive signal(s)", len(records))
        resolved = 0
        for index, record in enumerate(records):
            if index:
                await asyncio.sleep(self._recovery_spacing)
            try:
                if await self.verify(record) is not None:
                    resolved += 1
            except BlitzBotError as exc:
                logger.warning("Recovery of passive signal %s failed: %s", record["id"], exc)
            except Exception:
                logger.exception("Recovery of passive signal %s crashed", record["id"])
        return resolved

    def purge(self, now: float) -> int:
        removed = self._repo.purge_older_than(now - RETENTION_SECONDS)
        if removed:
            logger.info("Purged %d passive signal(s) older than 30 min", removed)
        return removed

    async def scan(self, now: float) -> int:
        """Evaluate the instrument × timeframe universe.  Returns signals stored."""
        instruments = [
            i for i in await self._broker.list_available_instruments(now) if i.tradable
        ]
        stored = 0
        for instrument in instruments:
            for timeframe in self._timeframes:
                try:
                    candles = await self._broker.fetch_candles(
                        instrument.id, timeframe, CANDLE_COUNT,
                    )
                    if len(candles) < CANDLE_COUNT:
                        continue
                    signal = evaluate_strategy(
                        StrategyName.HYBRID, candles, instrument.id, instrument.name,
                    )
                    if signal is None:
                        continue
                    due_at = now + timeframe + self._grace
                    record_id = self._repo.insert_pending(
                        instrument_id=instrument.id,
                        instrument_name=instrument.name,
                        timeframe=timeframe,
                        direction=signal.direction,
                        confidence=signal.confidence,
                        entry_price=signal.current_price,
                        signal_timestamp=now,
                        due_at=due_at,
                    )
                except BlitzBotError as exc:
                    logger.warning(
                        "Passive scan of %s × %ds failed: %s", instrument.name, timeframe, exc,
                    )
                    continue
                except Exception:
                    logger.exception(
                        "Passive scan of %s × %ds crashed", instrument.name, timeframe,
                    )
                    continue
                finally:
                    if self._scan_pacing:
                        await asyncio.sleep(self._scan_pacing)

                stored += 1
                self.signals_recorded += 1
                self._schedule(
                    {
                        "id": record_id,
                        "instrument_id": instrument.id,
                        "instrument_name": instrument.name,
                        "timeframe": timeframe,
                        "direction": signal.direction,
                        "entry_price": signal.current_price,
                    },
                    timeframe + self._grace,
                )
        logger.info(
            "Passive scan: %d instrument(s) × %d timeframe(s), %d signal(s)",
            len(instruments), len(self._timeframes), stored,
        )
        return stored

    async def tick(self, now: Optional[float] = None) -> dict:
        """Run recovery, purge and scan once."""
        now = self._clock() if now is None else now
        recovered = await self.recover_orphans(now)
        purged = self.purge(now)
        stored = await self.scan(now)
        return {"recovered": recovered, "purged": purged, "stored": stored}

    # ── Loop ─────────────────────────────────────────────────────────────

    async def run(self, max_cycles: int = 0) -> None:
        """Tick every interval until :meth:`stop`."""
        self._running = True
        self._stop_event.clear()
        cycle = 0
        logger.info(
            "Passive logger started: timeframes %s, every %.0fs",
            self._timeframes, self._interval,
        )
        try:
            while self._running:
                cycle += 1
                try:
                    await self.tick()
                except Exception as exc:
                    logger.error("Passive tick %d error: %s", cycle, exc)
                if max_cycles > 0 and cycle >= max_cycles:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            await self._cancel_pending()

    def stop(self) -> None:
        self._running = False
        self._stop_event.set()

    async def _cancel_pending(self) -> None:
        tasks = list(self._pending_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending_tasks.clear()

    # ── Queries ──────────────────────────────────────────────────────────

    def performance(self) -> list[dict]:
        return self._repo.performance()

    def recent(self, limit: int = 50) -> list[dict]:
        return self._repo.recent(limit)
