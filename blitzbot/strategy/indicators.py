"""Technical indicators — SMA, EMA, RSI, MACD, Bollinger Bands. Pure functions, no I/O."""

import math

from blitzbot.errors import InsufficientData, InvalidCandle
from blitzbot.strategy.models import (
    CALL,
    NEUTRAL,
    PUT,
    SQUEEZE,
    BollingerResult,
    Candle,
    MACDResult,
    RSIResult,
)

RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
BAND_TOLERANCE = 0.005
SQUEEZE_BANDWIDTH = 0.02


def extract_closes(candles: list[Candle], name: str = "indicator") -> list[float]:
    """Return the close prices of *candles*.

    Raises ``InvalidCandle`` naming the offending index when a close is not
    a finite number.
    """
    closes: list[float] = []
    for i, c in enumerate(candles):
        close = getattr(c, "close", None)
        if (
            isinstance(close, bool)
            or not isinstance(close, (int, float))
            or not math.isfinite(close)
        ):
            raise InvalidCandle(f"{name}: candle[{i}] has invalid close {close!r}")
        closes.append(float(close))
    return closes


def sma(values: list[float], period: int) -> float:
    """Simple moving average of the last *period* values."""
    if period < 1 or len(values) < period:
        raise InsufficientData(
            f"Need at least {period} values for SMA({period}), got {len(values)}"
        )
    window = values[-period:]
    return sum(window) / period


def ema_series(values: list[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    The first value is seeded with the SMA of the first *period* values,
    then ``EMA = value × k + EMA_prev × (1 - k)`` with ``k = 2 / (period + 1)``.

    Returns ``len(values) - period + 1`` values; index 0 corresponds to
    ``values[period - 1]``.
    """
    if len(values) < period:
        raise InsufficientData(
            f"Need at least {period} values for EMA({period}), got {len(values)}"
        )
    k = 2.0 / (period + 1)
    ema = sum(values[:period]) / period
    out = [ema]
    for value in values[period:]:
        ema = value * k + ema * (1 - k)
        out.append(ema)
    return out


# ── RSI ──────────────────────────────────────────────────────────────────


def compute_rsi(candles: list[Candle], period: int = 14) -> RSIResult:
    """Calculate Wilder's Relative Strength Index for the latest bar.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = mean of the first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 if avg_loss == 0, else 100 - 100 / (1 + avg_gain/avg_loss)

    Requires at least ``period + 1`` candles and ``period >= 2``.
    Oversold (< 30) maps to CALL, overbought (> 70) to PUT.
    """
    if period < 2:
        raise InsufficientData(f"RSI period must be >= 2, got {period}")
    if len(candles) < period + 1:
        raise InsufficientData(
            f"Need at least {period + 1} candles for RSI({period}), "
            f"got {len(candles)}"
        )

    closes = extract_closes(candles, "RSI")
    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        value = 100.0
    else:
        rs = avg_gain / avg_loss
        value = 100.0 - 100.0 / (1.0 + rs)
    value = round(max(0.0, min(100.0, value)), 2)

    if value < RSI_OVERSOLD:
        signal = CALL
    elif value > RSI_OVERBOUGHT:
        signal = PUT
    else:
        signal = NEUTRAL
    return RSIResult(value=value, signal=signal)


# ── MACD ─────────────────────────────────────────────────────────────────


def compute_macd(
    candles: list[Candle],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> MACDResult:
    """Calculate MACD, its signal line and histogram for the latest bar.

    MACD line   = EMA(fast) − EMA(slow)
    Signal line = EMA(signal) of the MACD line
    Histogram   = MACD − signal

    Requires ``slow_period + signal_period`` candles.  Trend is CALL when the
    histogram is positive and rising (or just crossed above zero), PUT when
    negative and falling (or just crossed below), else NEUTRAL.
    """
    if fast_period < 2 or slow_period < 2 or signal_period < 2:
        raise InsufficientData("MACD periods must all be >= 2")
    if fast_period >= slow_period:
        raise InsufficientData(
            f"MACD fast period ({fast_period}) must be below slow ({slow_period})"
        )
    min_candles = slow_period + signal_period
    if len(candles) < min_candles:
        raise InsufficientData(
            f"Need at least {min_candles} candles for MACD({fast_period},"
            f"{slow_period},{signal_period}), got {len(candles)}"
        )

    closes = extract_closes(candles, "MACD")
    fast = ema_series(closes, fast_period)
    slow = ema_series(closes, slow_period)
    offset = slow_period - fast_period
    macd_line = [fast[i + offset] - slow[i] for i in range(len(slow))]
    signal_line = ema_series(macd_line, signal_period)

    current_macd = macd_line[-1]
    current_signal = signal_line[-1]
    histogram = current_macd - current_signal

    previous_histogram = 0.0
    if len(signal_line) >= 2:
        previous_histogram = macd_line[-2] - signal_line[-2]

    if histogram > 0 and histogram > previous_histogram:
        trend = CALL
    elif histogram < 0 and histogram < previous_histogram:
        trend = PUT
    elif previous_histogram < 0 < histogram:
        trend = CALL
    elif previous_histogram > 0 > histogram:
        trend = PUT
    else:
        trend = NEUTRAL

    return MACDResult(
        macd=current_macd,
        signal_line=current_signal,
        histogram=histogram,
        trend=trend,
    )


# ── Bollinger Bands ──────────────────────────────────────────────────────


def compute_bollinger(
    candles: list[Candle],
    period: int = 20,
    std_dev: float = 2.0,
) -> BollingerResult:
    """Calculate Bollinger Bands over the last *period* closes.

    Middle = SMA(close, *period*)
    Upper  = middle + *std_dev* × σ
    Lower  = middle − *std_dev* × σ

    A bandwidth below 2 % of the middle band reports SQUEEZE.  Otherwise a
    close within 0.5 % of the lower band reports CALL, within 0.5 % of the
    upper band PUT, else NEUTRAL.
    """
    if period < 2:
        raise InsufficientData(f"Bollinger period must be >= 2, got {period}")
    if std_dev <= 0:
        raise InsufficientData(f"Bollinger std_dev must be > 0, got {std_dev}")
    if len(candles) < period:
        raise InsufficientData(
            f"Need at least {period} candles for Bollinger({period}), "
            f"got {len(candles)}"
        )

    window = extract_closes(candles[-period:], "Bollinger")
    middle = sum(window) / period
    variance = sum((x - middle) ** 2 for x in window) / period
    sigma = math.sqrt(variance)
    upper = middle + std_dev * sigma
    lower = middle - std_dev * sigma
    bandwidth = (upper - lower) / middle if middle != 0 else 0.0

    last_close = window[-1]
    if bandwidth < SQUEEZE_BANDWIDTH:
        signal = SQUEEZE
    elif last_close <= lower * (1 + BAND_TOLERANCE):
        signal = CALL
    elif last_close >= upper * (1 - BAND_TOLERANCE):
        signal = PUT
    else:
        signal = NEUTRAL

    return BollingerResult(
        lower=lower,
        middle=middle,
        upper=upper,
        bandwidth=bandwidth,
        signal=signal,
    )
