"""
Administrative control of the autopilot: mode, start/stop, kill switch reset
and manual close requests. Every change is recorded as an action-level audit entry.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from executor.risk import RiskBudget
from monitor.audit import AuditLog, EntityType
from state.checkpoint import CheckpointManager
from state.store import PipelineStore

logger = logging.getLogger(__name__)

CONTROL_STATE_KEY = "autopilot_control"
RISK_STATE_KEY = "risk_budget"
MODES = ("off", "paper", "live")

# Single-writer lease over the risk budget, shared with the executor
EXECUTOR_LEASE = "autopilot"
EXECUTOR_LEASE_TTL_SEC = 300.0


class ExecutorBusy(Exception):
    """Raised when a budget change is refused because an executor run holds the lease."""
    pass


@dataclass
class AutopilotControl:
    mode: str = "paper"
    running: bool = True

    def to_dict(self) -> dict:
        return {"mode": self.mode, "running": self.running}

    @classmethod
    def from_dict(cls, data: dict) -> AutopilotControl:
        mode = data.get("mode", "paper")
        if mode not in MODES:
            raise ValueError(f"Unknown autopilot mode: {mode}")
        return cls(mode=mode, running=bool(data.get("running", True)))


def load_control(checkpoint: CheckpointManager, default_mode: str) -> AutopilotControl:
    return checkpoint.load(CONTROL_STATE_KEY, AutopilotControl) or AutopilotControl(mode=default_mode)


def load_budget(checkpoint: CheckpointManager) -> RiskBudget:
    return checkpoint.load(RISK_STATE_KEY, RiskBudget) or RiskBudget()


def set_mode(
    checkpoint: CheckpointManager, audit: AuditLog, mode: str, default_mode: str, actor: str = "admin",
) -> AutopilotControl:
    if mode not in MODES:
        raise ValueError(f"Unknown autopilot mode: {mode!r} (expected one of {', '.join(MODES)})")
    control = load_control(checkpoint, default_mode)
    previous = control.mode
    control.mode = mode
    checkpoint.save(CONTROL_STATE_KEY, control)
    audit.action(f"MODE_CHANGE: {mode}", EntityType.CONFIG, "mode", previous=previous, mode=mode, actor=actor)
    audit.flush()
    logger.info("Autopilot mode %s -> %s", previous, mode)
    return control


def set_running(
    checkpoint: CheckpointManager, audit: AuditLog, running: bool, default_mode: str, actor: str = "admin",
) -> AutopilotControl:
    control = load_control(checkpoint, default_mode)
    control.running = running
    checkpoint.save(CONTROL_STATE_KEY, control)
    audit.action("BOT_STARTED" if running else "BOT_STOPPED", EntityType.SYSTEM, "autopilot", actor=actor)
    audit.flush()
    return control


def reset_kill_switch(
    store: PipelineStore,
    checkpoint: CheckpointManager,
    audit: AuditLog,
    actor: str = "admin",
    now: float | None = None,
) -> RiskBudget:
    """
    Clear the kill switch and start the day's drawdown over. Takes the
    executor lease so a run in flight cannot overwrite the reset budget.
    """
    now = now if now is not None else time.time()
    owner = f"control:{actor}:{uuid.uuid4().hex[:8]}"
    if not store.acquire_lease(EXECUTOR_LEASE, owner, EXECUTOR_LEASE_TTL_SEC, now):
        audit.warn("KILL_SWITCH_RESET_REFUSED", EntityType.RISK, "kill_switch", actor=actor, reason="executor_busy")
        audit.flush()
        raise ExecutorBusy("An executor run holds the lease; retry the reset when it finishes")
    try:
        budget = load_budget(checkpoint)
        was_active = budget.kill_switch_active
        cleared_drawdown = budget.daily_realized_drawdown_eur
        budget.reset_kill_switch()
        budget.daily_realized_drawdown_eur = 0.0
        checkpoint.save(RISK_STATE_KEY, budget)
    finally:
        store.release_lease(EXECUTOR_LEASE, owner)
    audit.action(
        "KILL_SWITCH_RESET", EntityType.RISK, "kill_switch",
        was_active=was_active, cleared_drawdown_eur=round(cleared_drawdown, 4), actor=actor,
    )
    logger.info("Kill switch reset by %s (daily PnL %.2f EUR cleared)", actor, cleared_drawdown)
    audit.flush()
    return budget


def request_close(store: PipelineStore, audit: AuditLog, position_id: str, actor: str = "admin") -> bool:
    """Flag an open position; the next executor run closes it. False if not open."""
    accepted = store.request_close(position_id)
    if accepted:
        audit.action("CLOSE_REQUESTED", EntityType.POSITION, position_id, actor=actor)
    else:
        audit.warn("CLOSE_REJECTED", EntityType.POSITION, position_id, actor=actor, reason="position not open")
    audit.flush()
    return accepted
