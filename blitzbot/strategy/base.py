"""Shared strategy result type.

Evaluators return a ``StrategyVerdict``; the registry turns it into a
``Signal`` bound to an instrument so evaluators stay free of instrument
metadata.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class StrategyVerdict:
    """Direction and confidence produced by one evaluator."""

    direction: str  # CALL or PUT
    confidence: float
    indicators: dict = field(default_factory=dict)
