"""Tests for the internal API endpoints."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from blitzbot.api import routers
from blitzbot.api.routers import (
    MAX_EVENTS,
    configure_routers,
    push_event,
    update_live_signals,
    update_session_status,
)
from blitzbot.main import app
from blitzbot.strategy.models import Signal

client = TestClient(app)


@pytest.fixture(autouse=True)
def _reset_router_state():
    routers.reset_state()
    yield
    routers.reset_state()


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_trade_repo(trades=None, total=0):
    """Return a mock TradeRepo with canned get_trades response."""
    repo = MagicMock()
    repo.get_trades.return_value = {"trades": trades or [], "total": total}
    return repo


def _make_control(result=None):
    control = MagicMock()
    control.handle_command = AsyncMock(
        return_value=result or {"accepted": True, "reason": None, "user_id": "u1"}
    )
    return control


# ── Health / status ──────────────────────────────────────────────────────


class TestStatusEndpoints:
    def test_health(self):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_status_empty(self):
        assert client.get("/status").json() == {"sessions": {}}

    def test_status_lists_sessions(self):
        update_session_status("u1", state="RUNNING", running=True, cycle_count=3)
        data = client.get("/status").json()
        assert data["sessions"]["u1"]["state"] == "RUNNING"
        assert data["sessions"]["u1"]["cycle_count"] == 3
        assert data["sessions"]["u1"]["holds"] == []

    def test_single_session_status(self):
        update_session_status("u1", state="STOPPED")
        assert client.get("/status/u1").json()["state"] == "STOPPED"
        assert "error" in client.get("/status/ghost").json()


# ── Trades / events ──────────────────────────────────────────────────────


class TestTradesAndEvents:
    def test_trades_without_repo(self):
        assert client.get("/trades").json() == {"trades": [], "total": 0}

    def test_trades_passes_filters(self):
        repo = _make_trade_repo(trades=[{"external_id": "pos-1"}], total=1)
        configure_routers(trade_repo=repo)
        resp = client.get("/trades", params={"limit": 5, "status": "closed", "user_id": "u1"})
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        repo.get_trades.assert_called_once_with(limit=5, status_filter="closed", user_id="u1")

    def test_trades_limit_validated(self):
        configure_routers(trade_repo=_make_trade_repo())
        assert client.get("/trades", params={"limit": 0}).status_code == 422

    def test_events_ring_buffer(self):
        for i in range(MAX_EVENTS + 5):
            push_event("position_opened", "u1", seq=i)
        events = client.get("/events").json()["events"]
        assert len(events) == MAX_EVENTS
        assert events[0]["seq"] == 5
        assert events[-1]["seq"] == MAX_EVENTS + 4
        assert events[-1]["type"] == "position_opened"
        assert events[-1]["user_id"] == "u1"

    def test_events_limit(self):
        for i in range(3):
            push_event("status_changed", "u1", seq=i)
        events = client.get("/events", params={"limit": 2}).json()["events"]
        assert [e["seq"] for e in events] == [1, 2]


# ── Scanner ──────────────────────────────────────────────────────────────


class TestScannerEndpoints:
    def test_signals_live_and_passive(self):
        update_live_signals("u1", [
            Signal(7, "EURUSD-OTC", "CALL", 70.0, "aggressive", 1.0931, {"rsi": 22.0}),
        ])
        passive = MagicMock()
        passive.recent.return_value = [{"id": 1, "result": "PENDING"}]
        configure_routers(passive_logger=passive)

        data = client.get("/scanner/signals", params={"limit": 5}).json()

        assert data["live"]["u1"] == [{
            "instrument_id": 7,
            "instrument_name": "EURUSD-OTC",
            "direction": "CALL",
            "confidence": 70.0,
            "strategy": "aggressive",
            "price": 1.0931,
        }]
        assert data["passive"] == [{"id": 1, "result": "PENDING"}]
        passive.recent.assert_called_once_with(5)

    def test_performance(self):
        passive = MagicMock()
        passive.performance.return_value = [{"instrument_id": 1, "win_rate": 60.0}]
        configure_routers(passive_logger=passive)
        assert client.get("/scanner/performance").json() == {
            "performance": [{"instrument_id": 1, "win_rate": 60.0}]
        }

    def test_performance_without_logger(self):
        assert client.get("/scanner/performance").json() == {"performance": []}


# ── Control ──────────────────────────────────────────────────────────────


class TestControlEndpoints:
    def test_control_not_configured(self):
        resp = client.post("/control/u1/stop")
        assert resp.status_code == 503

    def test_push_command(self):
        control = _make_control()
        configure_routers(control=control)
        body = {"type": "START_BOT", "command": {"user_id": "u1", "config": {}}}

        resp = client.post("/control/commands", json=body)

        assert resp.status_code == 200
        assert resp.json()["accepted"] is True
        control.handle_command.assert_awaited_once_with(body)

    def test_start_route(self):
        control = _make_control()
        configure_routers(control=control)

        client.post("/control/u1/start", json={"strategy": "hybrid"})

        control.handle_command.assert_awaited_once_with(
            {"type": "START_BOT", "command": {"user_id": "u1", "config": {"strategy": "hybrid"}}}
        )

    def test_stop_route(self):
        control = _make_control()
        configure_routers(control=control)
        client.post("/control/u1/stop")
        control.handle_command.assert_awaited_once_with(
            {"type": "STOP_BOT", "command": {"user_id": "u1"}}
        )

    def test_config_route_returns_rejection(self):
        control = _make_control(
            {"accepted": False, "reason": "not_running", "user_id": "u1", "detail": ""}
        )
        configure_routers(control=control)

        resp = client.post("/control/u1/config", json={"base_amount": 2})

        assert resp.json()["reason"] == "not_running"
        control.handle_command.assert_awaited_once_with(
            {"type": "RECONFIGURE_BOT", "command": {"user_id": "u1", "config": {"base_amount": 2}}}
        )
