"""Expiration selection — picks the option duration for a new position.

Manual sessions always use their configured timeframe.  Auto sessions walk a
confidence-tiered preference list over the instrument's available
expirations, then fall back to the shortest available, then a hard default.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

DEFAULT_EXPIRATION_SECONDS = 30


def _default_tiers() -> tuple[tuple[float, tuple[int, ...]], ...]:
    # (minimum confidence, preferred expirations in order)
    return (
        (75.0, (30, 60)),
        (60.0, (60, 30, 120)),
        (50.0, (120, 60, 300)),
        (0.0, (300, 120)),
    )


@dataclass(frozen=True)
class ExpiryPolicy:
    """Confidence tiers used to rank expirations in auto mode.

    Tiers are checked highest threshold first; the first tier whose
    threshold the signal's confidence meets supplies the preference order.
    """

    tiers: tuple[tuple[float, tuple[int, ...]], ...] = field(default_factory=_default_tiers)
    default_seconds: int = DEFAULT_EXPIRATION_SECONDS

    def preferences(self, confidence: float) -> tuple[int, ...]:
        for threshold, preferred in sorted(self.tiers, key=lambda t: t[0], reverse=True):
            if confidence >= threshold:
                return preferred
        return ()


def select_expiration(
    confidence: float,
    available: Sequence[int],
    policy: Optional[ExpiryPolicy] = None,
    manual_timeframe: Optional[int] = None,
) -> int:
    """Return the expiration in seconds for a new position.

    Args:
        confidence: Signal confidence in [0, 100].
        available: Expirations the instrument currently offers.
        policy: Tier configuration; defaults to ``ExpiryPolicy()``.
        manual_timeframe: When set, returned unchanged.
    """
    if manual_timeframe:
        return int(manual_timeframe)

    policy = policy or ExpiryPolicy()
    offered = set(available)
    for seconds in policy.preferences(confidence):
        if seconds in offered:
            return seconds
    if offered:
        return min(offered)
    return policy.default_seconds
