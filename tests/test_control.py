"""
Unit tests for executor/control.py -- mode, start/stop, kill switch, close requests.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from executor.control import (
    CONTROL_STATE_KEY,
    EXECUTOR_LEASE,
    AutopilotControl,
    ExecutorBusy,
    load_budget,
    load_control,
    request_close,
    reset_kill_switch,
    set_mode,
    set_running,
)
from executor.positions import HedgePosition, HedgeStatus
from executor.risk import RiskBudget
from monitor.audit import AuditLog
from state.checkpoint import CheckpointManager
from state.store import PipelineStore


@pytest.fixture
def env(tmp_path: Path):
    store = PipelineStore(tmp_path / "control.db")
    checkpoint = CheckpointManager(tmp_path / "control.db")
    audit = AuditLog(store)
    yield store, checkpoint, audit
    checkpoint.close()
    store.close()


class TestMode:
    def test_default_from_config(self, env):
        _, checkpoint, _ = env
        assert load_control(checkpoint, "live") == AutopilotControl(mode="live", running=True)

    def test_set_mode_persists_and_audits(self, env):
        store, checkpoint, audit = env
        control = set_mode(checkpoint, audit, "live", "paper", actor="api")
        assert control.mode == "live"
        assert load_control(checkpoint, "paper").mode == "live"

        entry = store.get_audit_entries(entity_id="mode")[0]
        assert entry["action"] == "MODE_CHANGE: live"
        assert entry["level"] == "action"
        assert entry["details"]["previous"] == "paper"
        assert entry["details"]["actor"] == "api"

    def test_unknown_mode(self, env):
        _, checkpoint, audit = env
        with pytest.raises(ValueError):
            set_mode(checkpoint, audit, "yolo", "paper")

    def test_corrupt_control_falls_back(self, env):
        _, checkpoint, _ = env
        checkpoint.save(CONTROL_STATE_KEY, AutopilotControl(mode="yolo"))
        assert load_control(checkpoint, "paper").mode == "paper"


class TestRunning:
    def test_stop_and_start(self, env):
        store, checkpoint, audit = env
        assert set_running(checkpoint, audit, False, "paper").running is False
        assert load_control(checkpoint, "paper").running is False
        set_running(checkpoint, audit, True, "paper")
        actions = [e["action"] for e in store.get_audit_entries(entity_id="autopilot")]
        assert actions == ["BOT_STARTED", "BOT_STOPPED"]

    def test_mode_kept_when_stopping(self, env):
        _, checkpoint, audit = env
        set_mode(checkpoint, audit, "live", "paper")
        assert set_running(checkpoint, audit, False, "paper").mode == "live"


class TestKillSwitch:
    def test_reset(self, env):
        store, checkpoint, audit = env
        budget = RiskBudget()
        budget.trip_kill_switch(1.0, "drawdown")
        checkpoint.save("risk_budget", budget)

        reset_kill_switch(store, checkpoint, audit, actor="cli")
        assert load_budget(checkpoint).kill_switch_active is False
        entry = store.get_audit_entries(entity_id="kill_switch")[0]
        assert entry["action"] == "KILL_SWITCH_RESET"
        assert entry["details"]["was_active"] is True

    def test_reset_clears_daily_drawdown(self, env):
        store, checkpoint, audit = env
        budget = RiskBudget(daily_realized_drawdown_eur=-60.0, day="2026-01-01", deployed_capital_eur=50.0)
        budget.trip_kill_switch(1.0, "daily drawdown limit reached")
        checkpoint.save("risk_budget", budget)

        reset = reset_kill_switch(store, checkpoint, audit, now=2.0)
        assert reset.daily_realized_drawdown_eur == 0.0
        assert reset.deployed_capital_eur == 50.0
        entry = store.get_audit_entries(entity_id="kill_switch")[0]
        assert entry["details"]["cleared_drawdown_eur"] == -60.0

    def test_reset_refused_while_executor_runs(self, env):
        store, checkpoint, audit = env
        budget = RiskBudget()
        budget.trip_kill_switch(1.0, "drawdown")
        checkpoint.save("risk_budget", budget)
        assert store.acquire_lease(EXECUTOR_LEASE, "executor-run", 300, 100.0)

        with pytest.raises(ExecutorBusy):
            reset_kill_switch(store, checkpoint, audit, now=110.0)
        assert load_budget(checkpoint).kill_switch_active is True
        assert store.get_audit_entries(entity_id="kill_switch")[0]["action"] == "KILL_SWITCH_RESET_REFUSED"

    def test_reset_releases_lease(self, env):
        store, checkpoint, audit = env
        reset_kill_switch(store, checkpoint, audit, now=100.0)
        assert store.acquire_lease(EXECUTOR_LEASE, "executor-run", 300, 100.0)


class TestRequestClose:
    def _insert(self, store: PipelineStore, pid: str, status: HedgeStatus) -> None:
        store.insert_position(HedgePosition(
            id=pid, symbol="BTC", long_exchange="binance", short_exchange="bybit",
            status=status, mode="paper", risk_tier="safe", size_eur=50.0,
            created_at=1.0, updated_at=1.0,
        ).to_row())

    def test_accepted(self, env):
        store, _, audit = env
        self._insert(store, "p1", HedgeStatus.OPEN)
        assert request_close(store, audit, "p1") is True
        assert store.get_position("p1")["close_requested"] == 1
        assert store.get_audit_entries(entity_id="p1")[0]["action"] == "CLOSE_REQUESTED"

    def test_rejected(self, env):
        store, _, audit = env
        self._insert(store, "p1", HedgeStatus.CLOSED)
        assert request_close(store, audit, "p1") is False
        entry = store.get_audit_entries(entity_id="p1")[0]
        assert entry["action"] == "CLOSE_REJECTED"
        assert entry["level"] == "warn"
