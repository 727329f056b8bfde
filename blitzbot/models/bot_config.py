"""Bot session configuration dataclass.

Represents the settings one user's trading session runs with.  Supplied by
the control plane at start and replaced wholesale on reconfigure.
"""

from dataclasses import asdict, dataclass
from typing import Optional

from blitzbot.errors import ConfigurationError
from blitzbot.strategy.models import StrategyName

MODES = ("auto", "manual")


def _flag(data: dict, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a boolean, got {value!r}")
    return value


@dataclass(frozen=True)
class BotConfig:
    """Configuration for a single trading session."""

    mode: str = "auto"  # "auto" scans the market, "manual" trades one asset
    strategy: str = StrategyName.BALANCED.value
    manual_asset: Optional[int] = None  # instrument id, manual mode only
    manual_timeframe: Optional[int] = None  # expiration in seconds, manual mode only
    base_amount: float = 1.0
    leverage_enabled: bool = False
    leverage_factor: float = 2.0
    safety_stop_enabled: bool = False
    safety_stop_threshold: int = 3
    daily_goal_enabled: bool = False
    daily_goal_amount: float = 0.0

    def validate(self) -> "BotConfig":
        """Raise ``ConfigurationError`` describing every invalid field."""
        errors: list[str] = []
        if self.mode not in MODES:
            errors.append(f"mode must be one of {', '.join(MODES)}")
        if self.strategy not in {s.value for s in StrategyName}:
            errors.append(f"unknown strategy '{self.strategy}'")
        if self.mode == "manual":
            if self.manual_asset is None:
                errors.append("manual mode requires manual_asset")
            if not self.manual_timeframe or self.manual_timeframe <= 0:
                errors.append("manual mode requires a positive manual_timeframe")
        if self.base_amount <= 0:
            errors.append("base_amount must be positive")
        if self.leverage_enabled and self.leverage_factor < 1:
            errors.append("leverage_factor must be >= 1")
        if self.safety_stop_enabled and self.safety_stop_threshold < 1:
            errors.append("safety_stop_threshold must be >= 1")
        if self.daily_goal_enabled and self.daily_goal_amount <= 0:
            errors.append("daily_goal_amount must be positive")
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BotConfig":
        """Build and validate a config from a control-plane payload.

        Unknown keys are ignored.  Raises ``ConfigurationError`` on bad types
        or invalid values.
        """
        data = data or {}
        try:
            cfg = cls(
                mode=str(data.get("mode", "auto")).lower(),
                strategy=str(data.get("strategy", StrategyName.BALANCED.value)).lower(),
                manual_asset=(
                    int(data["manual_asset"])
                    if data.get("manual_asset") is not None else None
                ),
                manual_timeframe=(
                    int(data["manual_timeframe"])
                    if data.get("manual_timeframe") is not None else None
                ),
                base_amount=float(data.get("base_amount", 1.0)),
                leverage_enabled=_flag(data, "leverage_enabled"),
                leverage_factor=float(data.get("leverage_factor", 2.0)),
                safety_stop_enabled=_flag(data, "safety_stop_enabled"),
                safety_stop_threshold=int(data.get("safety_stop_threshold", 3)),
                daily_goal_enabled=_flag(data, "daily_goal_enabled"),
                daily_goal_amount=float(data.get("daily_goal_amount", 0.0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid config value: {exc}") from exc
        return cfg.validate()
