"""Session-token provider.

Fetches per-user broker session tokens from the session service and caches
each one for 23 hours.  ``get_session_token`` returns ``None`` when no token
can be obtained; callers treat that as "cannot start".
"""

import logging
import time
from typing import Callable, Optional

import httpx

from blitzbot.config import Config

logger = logging.getLogger("blitzbot")

TOKEN_TTL_SECONDS = 23 * 60 * 60
_TOKEN_KEYS = ("ssid", "session_id", "token")


class SessionTokenProvider:
    """Issues and caches broker session tokens.

    Args:
        config: Application configuration.  ``session_service_url`` empty
            means the provider cannot issue tokens.
        clock: Returns the current epoch time; injectable for tests.
    """

    def __init__(
        self,
        config: Config,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = config.session_service_url.rstrip("/")
        self._api_token = config.broker_api_token
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}  # user_id → (token, expires_at)

    async def _issue(self, user_id: str) -> Optional[str]:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self._url}/{user_id}",
                headers={
                    "Authorization": f"Bearer {self._api_token}",
                    "Content-Type": "application/json",
                },
                timeout=30.0,
            )
        resp.raise_for_status()
        data = resp.json()
        for key in _TOKEN_KEYS:
            if data.get(key):
                return str(data[key])
        logger.error("Session service returned no token for user %s", user_id)
        return None

    async def get_session_token(self, user_id: str) -> Optional[str]:
        """Return a cached token or request a fresh one."""
        now = self._clock()
        cached = self._cache.get(user_id)
        if cached and cached[1] > now:
            return cached[0]

        if not self._url:
            logger.warning("No session service configured; cannot issue token for %s", user_id)
            return None

        try:
            token = await self._issue(user_id)
        except httpx.HTTPError as exc:
            logger.error("Session token request for %s failed: %s", user_id, exc)
            return None
        except ValueError as exc:
            logger.error("Session service sent unreadable response for %s: %s", user_id, exc)
            return None

        if token is None:
            return None
        self._cache[user_id] = (token, now + TOKEN_TTL_SECONDS)
        logger.info("Session token issued for user %s, valid 23h", user_id)
        return token

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id, None)
