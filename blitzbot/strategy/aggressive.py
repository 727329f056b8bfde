"""Aggressive strategy — RSI only, wide thresholds, fixed confidence."""

import logging
from typing import Optional

from blitzbot.errors import InsufficientData, InvalidCandle
from blitzbot.strategy.base import StrategyVerdict
from blitzbot.strategy.indicators import compute_rsi
from blitzbot.strategy.models import CALL, PUT, Candle

logger = logging.getLogger("blitzbot")

MIN_CANDLES = 14
CALL_BELOW = 35.0
PUT_ABOVE = 65.0
CONFIDENCE = 70.0


def analyze_aggressive(candles: list[Candle]) -> Optional[StrategyVerdict]:
    """Return CALL when RSI < 35, PUT when RSI > 65, else ``None``.

    Short or malformed series yield ``None``.
    """
    if len(candles) < MIN_CANDLES:
        return None
    try:
        rsi = compute_rsi(candles, period=14)
    except (InsufficientData, InvalidCandle) as exc:
        logger.debug("Aggressive: no signal (%s)", exc)
        return None

    snapshot = {"rsi": rsi.value}
    if rsi.value < CALL_BELOW:
        return StrategyVerdict(direction=CALL, confidence=CONFIDENCE, indicators=snapshot)
    if rsi.value > PUT_ABOVE:
        return StrategyVerdict(direction=PUT, confidence=CONFIDENCE, indicators=snapshot)
    return None
