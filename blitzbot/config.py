"""BlitzBot — application configuration.

Loads .env variables into a typed config object.
Validates required variables on startup.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


_REQUIRED_VARS = [
    "BROKER_GATEWAY_URL",
    "BROKER_API_TOKEN",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    broker_gateway_url: str
    broker_api_token: str
    session_service_url: str
    system_user_id: str
    db_path: str
    log_level: str
    api_port: int
    tick_interval_seconds: float = 2.0
    passive_interval_seconds: float = 10.0
    passive_timeframes: tuple[int, ...] = (10, 30, 60, 300)
    passive_enabled: bool = True

    @property
    def gateway_base_url(self) -> str:
        """Return the broker gateway URL without a trailing slash."""
        return self.broker_gateway_url.rstrip("/")


def _parse_timeframes(raw: str) -> tuple[int, ...]:
    """Parse a comma-separated list of expirations in seconds."""
    values = tuple(int(part) for part in raw.split(",") if part.strip())
    if not values or any(v <= 0 for v in values):
        raise ValueError(f"PASSIVE_TIMEFRAMES must list positive seconds, got {raw!r}")
    return values


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    return Config(
        broker_gateway_url=os.environ["BROKER_GATEWAY_URL"],
        broker_api_token=os.environ["BROKER_API_TOKEN"],
        session_service_url=os.environ.get("SESSION_SERVICE_URL", ""),
        system_user_id=os.environ.get("SYSTEM_USER_ID", "system"),
        db_path=os.environ.get("DB_PATH", "data/blitzbot.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=int(os.environ.get("API_PORT", "8080")),
        tick_interval_seconds=float(os.environ.get("TICK_INTERVAL_SECONDS", "2")),
        passive_interval_seconds=float(os.environ.get("PASSIVE_INTERVAL_SECONDS", "10")),
        passive_timeframes=_parse_timeframes(
            os.environ.get("PASSIVE_TIMEFRAMES", "10,30,60,300")
        ),
        passive_enabled=os.environ.get("PASSIVE_ENABLED", "true").lower()
        in ("1", "true", "yes"),
    )
