"""SessionManager — runs one TradingSession per user concurrently.

Sessions are started, stopped and reconfigured individually by the control
plane.  Each runs as its own ``asyncio`` task and owns its risk state, hold
tracker and open-position handle.
"""

import asyncio
import logging
from typing import Callable, Optional

from blitzbot.api.routers import push_event, update_session_status
from blitzbot.broker.client import BrokerClient
from blitzbot.config import Config
from blitzbot.engine import TradingSession
from blitzbot.errors import ConfigurationError, ConnectionFailure
from blitzbot.models.bot_config import BotConfig

logger = logging.getLogger("blitzbot.engine_manager")

NO_SESSION_TOKEN = "no_session_token"
INVALID_CONFIG = "invalid_config"
ALREADY_RUNNING = "already_running"
CONNECTION_FAILED = "connection_failed"
NOT_RUNNING = "not_running"


def _accepted(user_id: str, **extra) -> dict:
    return {"accepted": True, "reason": None, "user_id": user_id, **extra}


def _rejected(user_id: str, reason: str, detail: str = "") -> dict:
    return {"accepted": False, "reason": reason, "user_id": user_id, "detail": detail}


class SessionManager:
    """Lifecycle manager for per-user trading sessions.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        token_provider: ``SessionTokenProvider`` (or duck-type).
        trade_repo: Shared ``TradeRepo``; ``None`` disables persistence.
        broker_factory: Builds a broker from a session token.  Defaults to
            ``BrokerClient``.
        session_kwargs: Extra keyword arguments for every ``TradingSession``
            (tick interval, clock, ...).
    """

    def __init__(
        self,
        config: Config,
        token_provider=None,
        trade_repo=None,
        broker_factory: Optional[Callable[[Optional[str]], object]] = None,
        **session_kwargs,
    ) -> None:
        self._config = config
        self._token_provider = token_provider
        self._trade_repo = trade_repo
        self._broker_factory = broker_factory or (
            lambda token: BrokerClient(config, session_token=token)
        )
        self._session_kwargs = {
            "tick_interval": config.tick_interval_seconds,
            **session_kwargs,
        }
        self._sessions: dict[str, TradingSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._starting: set[str] = set()

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def sessions(self) -> dict[str, TradingSession]:
        """Map of user id → ``TradingSession``."""
        return dict(self._sessions)

    def is_running(self, user_id: str) -> bool:
        session = self._sessions.get(user_id)
        return session is not None and session.running

    def is_active(self, user_id: str) -> bool:
        """True while a session for *user_id* is connecting, running or winding down."""
        if user_id in self._starting or self.is_running(user_id):
            return True
        task = self._tasks.get(user_id)
        return task is not None and not task.done()

    async def start(self, user_id: str, raw_config: "dict | BotConfig | None") -> dict:
        """Connect and launch a session for *user_id*.

        Rejects synchronously with ``already_running``, ``invalid_config``,
        ``no_session_token`` or ``connection_failed``.
        """
        if self.is_active(user_id):
            logger.info("Start for %s ignored: already running.", user_id)
            return _rejected(user_id, ALREADY_RUNNING)

        # Reserved before the first await so an overlapping start sees it.
        self._starting.add(user_id)
        try:
            return await self._start(user_id, raw_config)
        finally:
            self._starting.discard(user_id)

    async def _start(self, user_id: str, raw_config: "dict | BotConfig | None") -> dict:
        try:
            bot_config = (
                raw_config.validate() if isinstance(raw_config, BotConfig)
                else BotConfig.from_dict(raw_config)
            )
        except ConfigurationError as exc:
            logger.warning("Start for %s rejected: %s", user_id, exc)
            return _rejected(user_id, INVALID_CONFIG, str(exc))

        session = TradingSession(
            user_id=user_id,
            config=bot_config,
            broker_factory=self._broker_factory,
            token_provider=self._token_provider,
            trade_repo=self._trade_repo,
            **self._session_kwargs,
        )
        try:
            await session.connect()
        except ConnectionFailure as exc:
            push_event("status_changed", user_id, state=session.state.value, reason=exc.reason)
            return _rejected(user_id, exc.reason, str(exc))

        self._sessions[user_id] = session
        self._tasks[user_id] = asyncio.create_task(self._run_session(session))
        push_event(
            "status_changed", user_id,
            state=session.state.value, mode=bot_config.mode, strategy=bot_config.strategy,
        )
        logger.info(
            "Session %s started → %s (%s)", user_id, bot_config.strategy, bot_config.mode,
        )
        return _accepted(user_id, state=session.state.value)

    async def _run_session(self, session: TradingSession) -> list[dict]:
        try:
            return await session.run()
        except Exception as exc:  # pragma: no cover
            logger.error("Session %s crashed: %s", session.user_id, exc)
            update_session_status(session.user_id, running=False, state="STOPPED")
            return [{"action": "error", "reason": str(exc)}]

    def stop(self, user_id: str) -> dict:
        """Signal the session of *user_id* to stop after its current tick."""
        if not self.is_running(user_id):
            return _rejected(user_id, NOT_RUNNING)
        self._sessions[user_id].stop()
        return _accepted(user_id, state=self._sessions[user_id].state.value)

    def reconfigure(self, user_id: str, raw_config: "dict | BotConfig") -> dict:
        """Replace the config of a running session between ticks."""
        if not self.is_running(user_id):
            return _rejected(user_id, NOT_RUNNING)
        try:
            bot_config = (
                raw_config.validate() if isinstance(raw_config, BotConfig)
                else BotConfig.from_dict(raw_config)
            )
        except ConfigurationError as exc:
            logger.warning("Reconfigure for %s rejected: %s", user_id, exc)
            return _rejected(user_id, INVALID_CONFIG, str(exc))
        self._sessions[user_id].reconfigure(bot_config)
        push_event(
            "status_changed", user_id,
            state=self._sessions[user_id].state.value,
            mode=bot_config.mode, strategy=bot_config.strategy,
        )
        return _accepted(user_id, config=bot_config.to_dict())

    def stop_all(self) -> None:
        """Signal every session to stop gracefully."""
        for user_id, session in self._sessions.items():
            session.stop()
            logger.info("Stop signal sent to session %s.", user_id)

    async def wait_all(self) -> dict[str, list[dict]]:
        """Wait for every session task to finish.

        Returns:
            ``{user_id: [cycle_results]}`` for every session.
        """
        results: dict[str, list[dict]] = {}
        for user_id, task in list(self._tasks.items()):
            results[user_id] = await task
        return results

    async def shutdown(self) -> None:
        self.stop_all()
        await self.wait_all()

    def get_status(self, user_id: Optional[str] = None) -> dict:
        """Return aggregated or per-session status."""
        if user_id is not None:
            session = self._sessions.get(user_id)
            if session is None:
                return {"error": f"Unknown session: {user_id}"}
            return session.status()
        return {"sessions": {uid: s.status() for uid, s in self._sessions.items()}}
