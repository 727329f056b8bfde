"""Confluence strategies — Conservative and Balanced.

Both require RSI, the MACD histogram sign, and Bollinger band proximity to
agree before calling a direction.  They differ only in the confidence they
report.
"""

import logging
from typing import Optional

from blitzbot.errors import InsufficientData, InvalidCandle
from blitzbot.strategy.base import StrategyVerdict
from blitzbot.strategy.indicators import (
    BAND_TOLERANCE,
    compute_bollinger,
    compute_macd,
    compute_rsi,
)
from blitzbot.strategy.models import CALL, PUT, Candle

logger = logging.getLogger("blitzbot")

MIN_CANDLES = 26
RSI_CALL_BELOW = 40.0
RSI_PUT_ABOVE = 60.0
CONSERVATIVE_CONFIDENCE = 50.0
BALANCED_CONFIDENCE = 60.0


def evaluate_confluence(
    candles: list[Candle],
    confidence: float,
) -> Optional[StrategyVerdict]:
    """Evaluate the three-indicator agreement rule.

    CALL: ``(RSI < 40 or close < lower × 1.005) and histogram > 0``
    PUT:  ``(RSI > 60 or close > upper × 0.995) and histogram < 0``

    Returns ``None`` when the indicators disagree or data is insufficient.
    """
    if len(candles) < MIN_CANDLES:
        return None
    try:
        rsi = compute_rsi(candles)
        macd = compute_macd(candles)
        bands = compute_bollinger(candles)
    except (InsufficientData, InvalidCandle) as exc:
        logger.debug("Confluence: no signal (%s)", exc)
        return None

    price = candles[-1].close
    snapshot = {
        "rsi": rsi.value,
        "macd_histogram": macd.histogram,
        "macd_trend": macd.trend,
        "bb_lower": bands.lower,
        "bb_middle": bands.middle,
        "bb_upper": bands.upper,
        "bb_signal": bands.signal,
    }

    near_lower = price < bands.lower * (1 + BAND_TOLERANCE)
    near_upper = price > bands.upper * (1 - BAND_TOLERANCE)

    if (rsi.value < RSI_CALL_BELOW or near_lower) and macd.histogram > 0:
        return StrategyVerdict(direction=CALL, confidence=confidence, indicators=snapshot)
    if (rsi.value > RSI_PUT_ABOVE or near_upper) and macd.histogram < 0:
        return StrategyVerdict(direction=PUT, confidence=confidence, indicators=snapshot)
    return None


def analyze_conservative(candles: list[Candle]) -> Optional[StrategyVerdict]:
    return evaluate_confluence(candles, CONSERVATIVE_CONFIDENCE)


def analyze_balanced(candles: list[Candle]) -> Optional[StrategyVerdict]:
    return evaluate_confluence(candles, BALANCED_CONFIDENCE)
