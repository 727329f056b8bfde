"""Control-plane adapter — turns start / stop / reconfigure commands into
session-manager calls.

Commands arrive pushed over HTTP.  Active commands are also persisted in
the ``bot_control`` table and replayed once at boot, so a start issued
while the process was down is not lost.
"""

import logging
from typing import Optional

from blitzbot.errors import PersistenceFailure

logger = logging.getLogger("blitzbot")

START_BOT = "START_BOT"
STOP_BOT = "STOP_BOT"
RECONFIGURE_BOT = "RECONFIGURE_BOT"
COMMAND_TYPES = (START_BOT, STOP_BOT, RECONFIGURE_BOT)


class ControlPlaneAdapter:
    """Dispatches ``{type, command: {user_id, config}}`` messages.

    Args:
        manager: ``SessionManager`` (or duck-type).
        control_repo: ``BotControlRepo`` for persisted active commands;
            ``None`` disables persistence and boot replay.
    """

    def __init__(self, manager, control_repo=None) -> None:
        self._manager = manager
        self._repo = control_repo

    async def handle_command(self, message: dict, persist: bool = True) -> dict:
        """Apply one command and return the manager's verdict."""
        command_type = str(message.get("type", "")).upper()
        command = message.get("command") or {}
        user_id: Optional[str] = command.get("user_id")
        if command_type not in COMMAND_TYPES or not user_id:
            logger.warning("Malformed control command: %s", message)
            return {
                "accepted": False,
                "reason": "invalid_command",
                "user_id": user_id,
                "detail": f"type must be one of {', '.join(COMMAND_TYPES)} with a user_id",
            }
        user_id = str(user_id)
        logger.info("Control command %s for %s", command_type, user_id)

        if command_type == START_BOT:
            config = command.get("config") or {}
            result = await self._manager.start(user_id, config)
            if result["accepted"] and persist:
                self._persist(lambda: self._repo.set_active(user_id, config))
        elif command_type == STOP_BOT:
            result = self._manager.stop(user_id)
            if persist:
                self._persist(lambda: self._repo.deactivate(user_id))
        else:
            config = command.get("config") or {}
            result = self._manager.reconfigure(user_id, config)
            if result["accepted"] and persist:
                self._persist(lambda: self._repo.set_active(user_id, result["config"]))
        return result

    def _persist(self, write) -> None:
        if self._repo is None:
            return
        try:
            write()
        except PersistenceFailure as exc:
            logger.error("Control state not saved: %s", exc)

    async def replay_active_commands(self) -> list[dict]:
        """Replay every persisted active command as a START, once at boot."""
        if self._repo is None:
            return []
        try:
            rows = self._repo.active_commands()
        except PersistenceFailure as exc:
            logger.error("Active commands unavailable: %s", exc)
            return []

        results = []
        for row in rows:
            logger.info("Replaying active command for %s", row["user_id"])
            results.append(
                await self.handle_command(
                    {"type": START_BOT, "command": row}, persist=False,
                )
            )
        return results
