"""
FastAPI server for the pipeline dashboard.

Read endpoints serve committed state from the pipeline database. Control
endpoints (mode toggle, start/stop, kill switch reset, manual close) require
the X-Admin-Token header to match the configured admin token; with no token
configured they are disabled.
"""

from __future__ import annotations

import hmac
import logging
import threading
from typing import Any, Literal

from pydantic import BaseModel

from config import Config
from executor.control import (
    ExecutorBusy,
    load_budget,
    load_control,
    request_close,
    reset_kill_switch,
    set_mode,
    set_running,
)
from ingest.cycle import load_circuit_board
from monitor.audit import AuditLog
from monitor.health import pipeline_health
from state.checkpoint import CheckpointManager
from state.store import PipelineStore

logger = logging.getLogger(__name__)


class ModeRequest(BaseModel):
    mode: Literal["off", "paper", "live"]


class RunningRequest(BaseModel):
    running: bool


def create_app(
    cfg: Config,
    store: PipelineStore,
    checkpoint: CheckpointManager,
    audit: AuditLog,
) -> Any:
    """Build and return the FastAPI application."""
    from fastapi import Depends, FastAPI, Header, HTTPException, Query

    app = FastAPI(title="Funding Arbitrage Dashboard", docs_url="/docs")

    def require_admin(x_admin_token: str | None = Header(None)) -> str:
        if not cfg.admin_token:
            raise HTTPException(status_code=403, detail="Administrative actions are disabled")
        if not x_admin_token or not hmac.compare_digest(x_admin_token, cfg.admin_token):
            raise HTTPException(status_code=401, detail="Invalid admin token")
        return "api"

    # ── Opportunities / signals ──

    @app.get("/api/opportunities")
    def get_opportunities(
        cycle_id: int | None = None,
        limit: int = Query(200, ge=1, le=2000),
    ):
        return store.get_opportunities(cycle_id, limit=limit)

    @app.get("/api/signals")
    def get_signals(limit: int = Query(50, ge=1, le=500)):
        return store.get_opportunities(signals_only=True, limit=limit)

    # ── Positions ──

    @app.get("/api/positions")
    def get_positions(
        status: str | None = None,
        limit: int = Query(200, ge=1, le=2000),
    ):
        statuses = tuple(s for s in status.split(",") if s) if status else None
        return store.get_positions(statuses, limit=limit)

    @app.get("/api/positions/{position_id}")
    def get_position(position_id: str):
        row = store.get_position(position_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Position not found")
        return row

    # ── Audit ──

    @app.get("/api/audit")
    def get_audit(
        limit: int = Query(100, ge=1, le=1000),
        level: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ):
        return store.get_audit_entries(limit, level=level, entity_type=entity_type, entity_id=entity_id)

    # ── Scheduler / health ──

    @app.get("/api/schedules")
    def get_schedules(active_only: bool = False):
        return store.get_schedules(active_only=active_only)

    @app.get("/api/health")
    def get_health():
        health = pipeline_health(store, cfg.health_stale_after_sec)
        health["circuits"] = load_circuit_board(checkpoint, cfg).to_dict()["circuits"]
        return health

    # ── Control ──

    @app.get("/api/control")
    def get_control():
        control = load_control(checkpoint, cfg.mode)
        return {**control.to_dict(), "risk": load_budget(checkpoint).to_dict()}

    @app.post("/api/control/mode")
    def post_mode(body: ModeRequest, actor: str = Depends(require_admin)):
        return set_mode(checkpoint, audit, body.mode, cfg.mode, actor=actor).to_dict()

    @app.post("/api/control/running")
    def post_running(body: RunningRequest, actor: str = Depends(require_admin)):
        return set_running(checkpoint, audit, body.running, cfg.mode, actor=actor).to_dict()

    @app.post("/api/control/kill-switch/reset")
    def post_reset_kill_switch(actor: str = Depends(require_admin)):
        try:
            return reset_kill_switch(store, checkpoint, audit, actor=actor).to_dict()
        except ExecutorBusy as e:
            raise HTTPException(status_code=409, detail=str(e))

    @app.post("/api/positions/{position_id}/close")
    def post_close(position_id: str, actor: str = Depends(require_admin)):
        if store.get_position(position_id) is None:
            raise HTTPException(status_code=404, detail="Position not found")
        if not request_close(store, audit, position_id, actor=actor):
            raise HTTPException(status_code=409, detail="Position is not open")
        return {"id": position_id, "close_requested": True}

    return app


def start_server(
    cfg: Config,
    store: PipelineStore,
    checkpoint: CheckpointManager,
    audit: AuditLog,
) -> threading.Thread:
    """Start the API in a daemon thread next to a looping pipeline. Returns the thread."""
    import uvicorn

    app = create_app(cfg, store, checkpoint, audit)

    def _run():
        uvicorn.run(app, host=cfg.api_host, port=cfg.api_port, log_level="warning", access_log=False)

    thread = threading.Thread(target=_run, daemon=True, name="api-server")
    thread.start()
    logger.info("Dashboard API started at http://%s:%d", cfg.api_host, cfg.api_port)
    return thread
