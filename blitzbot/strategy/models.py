"""Strategy data models — typed representations for indicator and strategy outputs."""

import enum
from dataclasses import dataclass, field


CALL = "CALL"
PUT = "PUT"
NEUTRAL = "NEUTRAL"
SQUEEZE = "SQUEEZE"

DIRECTIONS = (CALL, PUT)


class StrategyName(str, enum.Enum):
    """Closed set of signal policies a session can run."""

    AGGRESSIVE = "aggressive"
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar, ordered oldest-first within a series."""

    open: float
    high: float
    low: float
    close: float
    timestamp: int  # epoch seconds of the bar open


@dataclass(frozen=True)
class RSIResult:
    value: float  # 0..100
    signal: str  # CALL / PUT / NEUTRAL


@dataclass(frozen=True)
class MACDResult:
    macd: float
    signal_line: float
    histogram: float
    trend: str  # CALL / PUT / NEUTRAL


@dataclass(frozen=True)
class BollingerResult:
    lower: float
    middle: float
    upper: float
    bandwidth: float
    signal: str  # CALL / PUT / NEUTRAL / SQUEEZE


@dataclass(frozen=True)
class Signal:
    """A directional trade idea for one instrument.

    Consumed once per cycle; only survives as the snapshot stored with the
    resulting trade record.
    """

    instrument_id: int
    instrument_name: str
    direction: str  # CALL or PUT
    confidence: float  # 0..100
    strategy_name: str
    current_price: float
    indicators: dict = field(default_factory=dict)
