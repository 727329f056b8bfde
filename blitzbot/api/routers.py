"""Internal API routers — /status, /trades, /events, /scanner and /control endpoints.

No business logic, no DB access. Delegates to repos, the session manager,
the passive logger and the control-plane adapter.
"""

import logging
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("blitzbot")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_DEFAULT_SESSION_STATUS: dict = {
    "state": "IDLE",
    "running": False,
    "mode": None,
    "strategy": None,
    "balance": None,
    "currency": None,
    "open_position": None,
    "risk": None,
    "holds": [],
    "cycle_count": 0,
    "last_cycle_at": None,
    "last_order_at": None,
    "started_at": None,
}

MAX_EVENTS = 50

# Keyed by user id → status dict
_session_statuses: dict[str, dict] = {}
_events: list[dict] = []  # Ring buffer of emitted events (max 50)
_live_signals: dict[str, list[dict]] = {}  # user id → last ranked scan

_trade_repo = None        # Set via configure_routers()
_passive_logger = None    # Set via configure_routers()
_session_manager = None   # Set via configure_routers()
_control = None           # Set via configure_routers()


def configure_routers(
    trade_repo=None,
    passive_logger=None,
    session_manager=None,
    control=None,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        trade_repo: A ``TradeRepo`` instance (or duck-type for tests).
        passive_logger: A ``PassiveSignalLogger`` for scanner endpoints.
        session_manager: A ``SessionManager`` for status queries.
        control: A ``ControlPlaneAdapter`` receiving pushed commands.
    """
    global _trade_repo, _passive_logger, _session_manager, _control  # noqa: PLW0603
    _trade_repo = trade_repo
    _passive_logger = passive_logger
    _session_manager = session_manager
    _control = control


def update_session_status(user_id: str, **fields) -> None:
    """Update individual fields of a session's status dict."""
    if user_id not in _session_statuses:
        _session_statuses[user_id] = {
            **_DEFAULT_SESSION_STATUS,
            "user_id": user_id,
        }
    _session_statuses[user_id].update(fields)


def update_live_signals(user_id: str, signals: list) -> None:
    """Store the latest ranked scan of a session (top 10)."""
    _live_signals[user_id] = [
        {
            "instrument_id": s.instrument_id,
            "instrument_name": s.instrument_name,
            "direction": s.direction,
            "confidence": s.confidence,
            "strategy": s.strategy_name,
            "price": s.current_price,
        }
        for s in signals[:10]
    ]


def push_event(event_type: str, user_id: Optional[str] = None, **payload) -> dict:
    """Emit a structured notification.

    Logged and appended to the ring buffer served by ``GET /events`` so an
    external broadcaster can relay it.
    """
    event = {
        "type": event_type,
        "user_id": user_id,
        "timestamp": time.time(),
        **payload,
    }
    logger.info("event=%s user=%s %s", event_type, user_id, payload)
    _events.append(event)
    if len(_events) > MAX_EVENTS:
        del _events[0]
    return event


def reset_state() -> None:
    """Clear all shared state.  Used between tests."""
    _session_statuses.clear()
    _events.clear()
    _live_signals.clear()
    configure_routers()


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return status for every known session."""
    return {"sessions": dict(_session_statuses)}


@router.get("/status/{user_id}")
async def get_session_status(user_id: str):
    """Return status for a single session."""
    status = _session_statuses.get(user_id)
    if status is None:
        return {"error": f"Unknown session: {user_id}"}
    return status


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
):
    """Return recent trade records."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(
        limit=limit, status_filter=status, user_id=user_id,
    )


@router.get("/events")
async def get_events(limit: int = Query(default=MAX_EVENTS, ge=1, le=MAX_EVENTS)):
    """Return the most recent events, newest last."""
    return {"events": _events[-limit:]}


@router.get("/scanner/signals")
async def get_scanner_signals(limit: int = Query(default=20, ge=1, le=100)):
    """Return live ranked signals per session and recent passive records."""
    passive = []
    if _passive_logger is not None:
        passive = _passive_logger.recent(limit)
    return {"live": dict(_live_signals), "passive": passive}


@router.get("/scanner/performance")
async def get_scanner_performance():
    """Return passive-signal win rates per instrument × timeframe."""
    if _passive_logger is None:
        return {"performance": []}
    return {"performance": _passive_logger.performance()}


# ── Control actions ──────────────────────────────────────────────────────


def _require_control():
    if _control is None:
        raise HTTPException(status_code=503, detail="Control plane not configured")
    return _control


@router.post("/control/commands")
async def post_command(body: dict):
    """Accept a pushed ``{type, command: {user_id, config}}`` command."""
    control = _require_control()
    return await control.handle_command(body)


@router.post("/control/{user_id}/start")
async def start_session(user_id: str, body: Optional[dict] = None):
    """Start a session for *user_id*; the body is its bot config."""
    control = _require_control()
    return await control.handle_command(
        {"type": "START_BOT", "command": {"user_id": user_id, "config": body or {}}}
    )


@router.post("/control/{user_id}/stop")
async def stop_session(user_id: str):
    """Stop the session of *user_id*."""
    control = _require_control()
    return await control.handle_command(
        {"type": "STOP_BOT", "command": {"user_id": user_id}}
    )


@router.post("/control/{user_id}/config")
async def reconfigure_session(user_id: str, body: dict):
    """Replace the bot config of a running session."""
    control = _require_control()
    return await control.handle_command(
        {"type": "RECONFIGURE_BOT", "command": {"user_id": user_id, "config": body}}
    )
