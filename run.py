#!/usr/bin/env python3
"""
Funding-rate arbitrage pipeline -- single entry point.

Each invocation runs one short pass and exits; an external scheduler (cron,
systemd timer) provides the cadence, or --loop repeats the pass in-process:
  1. ingest   -- poll due exchange/symbol schedules, write snapshots
  2. score    -- pair exchanges per symbol, rank cost-aware signals
  3. execute  -- open/close hedges within the risk budget (paper or live)

Usage:
  python run.py cycle                 # ingest -> score -> execute once
  python run.py cycle --loop 60       # repeat every 60s
  python run.py ingest | score | execute
  python run.py serve                 # dashboard API
  python run.py mode live             # switch autopilot mode
  python run.py start | stop          # allow / pause new entries
  python run.py close <position-id>   # request a manual close
  python run.py reset-kill-switch
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field

from client.exchanges import build_market_clients
from client.gateway import ExchangeGateway, OrderClient
from client.orders import CcxtOrderClient, PaperOrderClient
from config import Config, ConfigError, load_config
from executor.autopilot import AutopilotExecutor
from executor.control import MODES, ExecutorBusy, request_close, reset_kill_switch, set_mode, set_running
from ingest.cycle import run_ingestion
from monitor.audit import AuditLog
from monitor.logger import setup_logging
from scanner.engine import run_scoring
from state.checkpoint import CheckpointManager, install_shutdown_handlers
from state.store import PipelineStore

logger = logging.getLogger(__name__)

_BANNER = """
 ═══════════════════════════════════════════════
   FUNDING ARBITRAGE PIPELINE
 ═══════════════════════════════════════════════"""

PIPELINE_STAGES = ("ingest", "score", "execute")


@dataclass
class Pipeline:
    """Everything one invocation needs, built once from config."""
    cfg: Config
    store: PipelineStore
    checkpoint: CheckpointManager
    audit: AuditLog
    gateway: ExchangeGateway
    order_clients: dict[str, OrderClient] = field(default_factory=dict)

    def close(self) -> None:
        self.audit.drain()
        self.checkpoint.close()
        self.store.close()


def build_pipeline(cfg: Config) -> Pipeline:
    store = PipelineStore(cfg.db_path)
    checkpoint = CheckpointManager(cfg.db_path)
    audit = AuditLog(store, max_buffer=cfg.audit_buffer_size)
    return Pipeline(
        cfg=cfg,
        store=store,
        checkpoint=checkpoint,
        audit=audit,
        gateway=ExchangeGateway(build_market_clients(cfg)),
        order_clients={
            "paper": PaperOrderClient(cfg, store.get_latest_mark),
            "live": CcxtOrderClient(cfg),
        },
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Funding-rate arbitrage pipeline")
    parser.add_argument("--log-level", type=str, default=None, help="Console log level (default: LOG_LEVEL from config)")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--log-dir", type=str, default="logs", help="Directory for verbose debug logs (default: logs)")

    sub = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("ingest", "Poll due schedules and write snapshots"),
        ("score", "Score the latest snapshots into signals"),
        ("execute", "Run the autopilot executor once"),
        ("cycle", "Run ingest, score and execute in order"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--loop", type=float, default=0.0, metavar="SEC",
                       help="Repeat every SEC seconds until interrupted (default: run once)")
        if name == "cycle":
            p.add_argument("--serve", action="store_true", help="Also serve the dashboard API while looping")

    sub.add_parser("serve", help="Serve the dashboard API")

    p = sub.add_parser("mode", help="Set the autopilot mode")
    p.add_argument("mode", choices=MODES)

    sub.add_parser("start", help="Allow the autopilot to open new hedges")
    sub.add_parser("stop", help="Stop opening new hedges (open positions are still managed)")

    p = sub.add_parser("close", help="Request a manual close of an open position")
    p.add_argument("position_id")

    sub.add_parser("reset-kill-switch", help="Clear an active kill switch")
    return parser.parse_args(argv)


# ── Stages ──

def run_stage(pipeline: Pipeline, stage: str) -> dict:
    """Run one stage and return its summary."""
    cfg = pipeline.cfg
    if stage == "ingest":
        result = run_ingestion(cfg, pipeline.store, pipeline.gateway, pipeline.checkpoint, pipeline.audit)
        return result.to_stats()
    if stage == "score":
        result = run_scoring(cfg, pipeline.store, pipeline.checkpoint)
        return {"cycle_id": result.cycle_id, "candidates": len(result.candidates), "signals": len(result.signals)}
    if stage == "execute":
        executor = AutopilotExecutor(
            cfg, pipeline.store, pipeline.checkpoint, pipeline.audit, pipeline.order_clients,
        )
        result = executor.run()
        return {
            "mode": result.mode, "opened": len(result.opened), "closed": len(result.closed),
            "failed": len(result.failed), "blocked": len(result.blocked), "skipped": result.skipped_reason,
        }
    raise ValueError(f"Unknown stage: {stage}")


def run_pass(pipeline: Pipeline, stages: tuple[str, ...]) -> bool:
    """
    Run stages in order. A failing stage is logged and the next one still
    runs against committed state. Returns True if every stage succeeded.
    """
    ok = True
    for stage in stages:
        start = time.time()
        try:
            summary = run_stage(pipeline, stage)
        except Exception:
            logger.exception("Stage %s failed", stage)
            ok = False
            continue
        logger.debug("Stage %s done in %.2fs: %s", stage, time.time() - start, json.dumps(summary, default=str))
    return ok


def _sleep_remaining(cycle_start: float, interval: float) -> None:
    remaining = interval - (time.time() - cycle_start)
    if remaining > 0:
        logger.debug("Sleeping %.1fs until next pass...", remaining)
        time.sleep(remaining)


def run_loop(pipeline: Pipeline, stages: tuple[str, ...], interval: float) -> bool:
    if interval <= 0:
        return run_pass(pipeline, stages)
    passes = 0
    try:
        while True:
            cycle_start = time.time()
            passes += 1
            logger.info("── Pass %d ──", passes)
            run_pass(pipeline, stages)
            _sleep_remaining(cycle_start, interval)
    except KeyboardInterrupt:
        logger.info("Interrupted after %d passes", passes)
    return True


# ── Admin commands ──

def run_admin(pipeline: Pipeline, args: argparse.Namespace) -> int:
    cfg = pipeline.cfg
    if args.command == "mode":
        control = set_mode(pipeline.checkpoint, pipeline.audit, args.mode, cfg.mode, actor="cli")
        logger.info("Mode is now %s", control.mode)
    elif args.command in ("start", "stop"):
        control = set_running(pipeline.checkpoint, pipeline.audit, args.command == "start", cfg.mode, actor="cli")
        logger.info("Autopilot %s", "running" if control.running else "stopped")
    elif args.command == "close":
        if not request_close(pipeline.store, pipeline.audit, args.position_id, actor="cli"):
            logger.error("Position %s is not open", args.position_id)
            return 1
        logger.info("Close requested for %s; the next execute pass closes it", args.position_id)
    elif args.command == "reset-kill-switch":
        try:
            reset_kill_switch(pipeline.store, pipeline.checkpoint, pipeline.audit, actor="cli")
        except ExecutorBusy as e:
            logger.error("%s", e)
            return 1
        logger.info("Kill switch cleared")
    return 0


def serve(pipeline: Pipeline) -> int:
    import uvicorn

    from report.server import create_app

    app = create_app(pipeline.cfg, pipeline.store, pipeline.checkpoint, pipeline.audit)
    logger.info("Dashboard API at http://%s:%d", pipeline.cfg.api_host, pipeline.cfg.api_port)
    uvicorn.run(app, host=pipeline.cfg.api_host, port=pipeline.cfg.api_port, log_level="warning")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config()
    except ConfigError as e:
        setup_logging("INFO", log_dir=None)
        logger.error("Configuration error: %s", e)
        return 1

    log_path = setup_logging(
        args.log_level or cfg.log_level, json_log_file=args.json_log, log_dir=args.log_dir, stage=args.command,
    )
    logger.info(_BANNER.strip("\n"))
    logger.info("  Command: %s | mode: %s | db: %s", args.command, cfg.mode, cfg.db_path)
    if log_path:
        logger.debug("  Log file: %s", log_path)

    pipeline = build_pipeline(cfg)
    install_shutdown_handlers(pipeline.audit.drain)
    try:
        if args.command == "serve":
            return serve(pipeline)
        if args.command in ("mode", "start", "stop", "close", "reset-kill-switch"):
            return run_admin(pipeline, args)

        stages = PIPELINE_STAGES if args.command == "cycle" else (args.command,)
        if getattr(args, "serve", False):
            from report.server import start_server
            start_server(cfg, pipeline.store, pipeline.checkpoint, pipeline.audit)
        return 0 if run_loop(pipeline, stages, args.loop) else 1
    finally:
        pipeline.close()


if __name__ == "__main__":
    sys.exit(main())
