"""Hybrid strategy — weighted vote across four price-action advisors.

Advisors and their weights:
    pattern counter       0.40   last 3 candles, expects a reversal
    mean reversion        0.30   distance from SMA20
    gap hunter            0.20   opening gap vs previous close, expects a fill
    level analyst         0.10   proximity to the 10-bar high / low

Each advisor votes CALL, PUT or NEUTRAL with a confidence.  Weighted
confidences are summed per direction; the larger sum wins and becomes the
reported confidence.  Ties and sums below the consensus floor yield no signal.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from blitzbot.errors import InvalidCandle
from blitzbot.strategy.base import StrategyVerdict
from blitzbot.strategy.indicators import extract_closes
from blitzbot.strategy.models import CALL, NEUTRAL, PUT, Candle

logger = logging.getLogger("blitzbot")

MIN_CANDLES = 20
DEFAULT_CONSENSUS_FLOOR = 50.0


@dataclass(frozen=True)
class AdvisorVote:
    name: str
    direction: str
    confidence: float
    weight: float


def _momentum(candle: Candle) -> str:
    if candle.close > candle.open:
        return CALL
    if candle.close < candle.open:
        return PUT
    return NEUTRAL


# ── Advisors ─────────────────────────────────────────────────────────────


def pattern_counter_vote(candles: list[Candle]) -> Optional[AdvisorVote]:
    """Two or more same-colour candles out of the last three → expect reversal."""
    if len(candles) < 3:
        return None
    last3 = candles[-3:]
    bullish = sum(1 for c in last3 if c.close > c.open)
    bearish = sum(1 for c in last3 if c.close < c.open)

    if bullish >= 2:
        return AdvisorVote("pattern_counter", PUT, 80.0 if bullish == 3 else 70.0, 0.40)
    if bearish >= 2:
        return AdvisorVote("pattern_counter", CALL, 80.0 if bearish == 3 else 70.0, 0.40)
    return AdvisorVote("pattern_counter", NEUTRAL, 0.0, 0.40)


def mean_reversion_vote(candles: list[Candle]) -> Optional[AdvisorVote]:
    """Price above SMA20 → expect a drop; below → expect a rise."""
    if len(candles) < 20:
        return None
    closes = [c.close for c in candles[-20:]]
    sma20 = sum(closes) / 20
    if sma20 == 0:
        return None
    deviation_pct = (closes[-1] - sma20) / sma20 * 100.0
    confidence = min(50.0 + abs(deviation_pct) * 10.0, 85.0)

    if deviation_pct > 0:
        return AdvisorVote("mean_reversion", PUT, confidence, 0.30)
    if deviation_pct < 0:
        return AdvisorVote("mean_reversion", CALL, confidence, 0.30)
    return AdvisorVote("mean_reversion", NEUTRAL, 0.0, 0.30)


def gap_hunter_vote(candles: list[Candle]) -> Optional[AdvisorVote]:
    """Gap up → expect fill downwards; gap down → upwards; else follow momentum."""
    if len(candles) < 2:
        return None
    last, prev = candles[-1], candles[-2]
    gap = last.open - prev.close
    avg_price = (last.close + prev.close) / 2
    gap_pct = abs(gap) / avg_price * 100.0 if avg_price else 0.0
    confidence = min(60.0 + gap_pct * 20.0, 90.0)

    if gap > 0:
        return AdvisorVote("gap_hunter", PUT, confidence, 0.20)
    if gap < 0:
        return AdvisorVote("gap_hunter", CALL, confidence, 0.20)
    return AdvisorVote("gap_hunter", _momentum(last), 50.0, 0.20)


def level_analyst_vote(candles: list[Candle]) -> Optional[AdvisorVote]:
    """Within the top or bottom 20 % of the 10-bar range → expect a bounce."""
    if len(candles) < 10:
        return None
    recent = candles[-10:]
    resistance = max(c.high for c in recent)
    support = min(c.low for c in recent)
    price = recent[-1].close
    band = (resistance - support) * 0.2

    to_resistance = resistance - price
    to_support = price - support
    if band > 0 and to_resistance < band:
        return AdvisorVote("level_analyst", PUT, 60.0 + (1 - to_resistance / band) * 20.0, 0.10)
    if band > 0 and to_support < band:
        return AdvisorVote("level_analyst", CALL, 60.0 + (1 - to_support / band) * 20.0, 0.10)
    return AdvisorVote("level_analyst", _momentum(recent[-1]), 55.0, 0.10)


ADVISORS = (
    pattern_counter_vote,
    mean_reversion_vote,
    gap_hunter_vote,
    level_analyst_vote,
)


# ── Consensus ────────────────────────────────────────────────────────────


def _check_prices(candles: list[Candle]) -> None:
    """Raise ``InvalidCandle`` unless every OHLC price is a finite number."""
    extract_closes(candles, "Hybrid")
    for i, c in enumerate(candles):
        for field in ("open", "high", "low"):
            price = getattr(c, field, None)
            if (
                isinstance(price, bool)
                or not isinstance(price, (int, float))
                or not math.isfinite(price)
            ):
                raise InvalidCandle(f"Hybrid: candle[{i}] has invalid {field} {price!r}")


def analyze_hybrid(
    candles: list[Candle],
    consensus_floor: float = DEFAULT_CONSENSUS_FLOOR,
) -> Optional[StrategyVerdict]:
    """Combine the advisors' weighted votes into one verdict or ``None``.

    Short or malformed series yield ``None``.
    """
    if len(candles) < MIN_CANDLES:
        return None
    try:
        _check_prices(candles)
    except InvalidCandle as exc:
        logger.debug("Hybrid: no signal (%s)", exc)
        return None

    votes = [v for v in (advisor(candles) for advisor in ADVISORS) if v is not None]
    call_score = sum(v.confidence * v.weight for v in votes if v.direction == CALL)
    put_score = sum(v.confidence * v.weight for v in votes if v.direction == PUT)

    if call_score == put_score:
        return None
    direction = CALL if call_score > put_score else PUT
    confidence = round(max(call_score, put_score))
    if confidence < consensus_floor:
        return None

    return StrategyVerdict(
        direction=direction,
        confidence=float(confidence),
        indicators={
            "call_score": round(call_score, 2),
            "put_score": round(put_score, 2),
            "advisors": [
                {"name": v.name, "direction": v.direction, "confidence": round(v.confidence, 2)}
                for v in votes
            ],
        },
    )
