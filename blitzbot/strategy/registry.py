"""Strategy registry — maps ``StrategyName`` members to evaluator functions.

Used by the scanner and the trading session to evaluate a candle series
under the session's configured policy.
"""

from typing import Callable, Optional

from blitzbot.strategy.aggressive import analyze_aggressive
from blitzbot.strategy.base import StrategyVerdict
from blitzbot.strategy.confluence import analyze_balanced, analyze_conservative
from blitzbot.strategy.hybrid import analyze_hybrid
from blitzbot.strategy.models import Candle, Signal, StrategyName


STRATEGY_REGISTRY: dict[StrategyName, Callable[[list[Candle]], Optional[StrategyVerdict]]] = {
    StrategyName.AGGRESSIVE: analyze_aggressive,
    StrategyName.CONSERVATIVE: analyze_conservative,
    StrategyName.BALANCED: analyze_balanced,
    StrategyName.HYBRID: analyze_hybrid,
}


def resolve_strategy(name: "str | StrategyName") -> StrategyName:
    """Return the ``StrategyName`` for *name*.

    Raises ``KeyError`` if the strategy name is not registered.
    """
    try:
        return StrategyName(name)
    except ValueError:
        raise KeyError(
            f"Unknown strategy '{name}'. "
            f"Available: {', '.join(s.value for s in StrategyName)}"
        ) from None


def evaluate_strategy(
    name: "str | StrategyName",
    candles: list[Candle],
    instrument_id: int,
    instrument_name: str,
) -> Optional[Signal]:
    """Evaluate *candles* under strategy *name* and bind the verdict to an instrument.

    Returns ``None`` when the strategy finds no signal.
    """
    strategy = resolve_strategy(name)
    verdict = STRATEGY_REGISTRY[strategy](candles)
    if verdict is None:
        return None
    return Signal(
        instrument_id=instrument_id,
        instrument_name=instrument_name,
        direction=verdict.direction,
        confidence=verdict.confidence,
        strategy_name=strategy.value,
        current_price=candles[-1].close,
        indicators=dict(verdict.indicators),
    )
