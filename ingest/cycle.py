"""
One ingestion pass: pick due schedules, fetch one batch per exchange
concurrently, record snapshots and bookkeeping, drive the circuit breakers.

A failing exchange only affects its own schedules. last_polled_at moves after
the attempt completes, never before, so a crash mid-pass simply leaves the
work due for the next pass.

Passes are serialized by a store lease: an overlapping pass (a second cron
trigger) exits without fetching, so a half-open circuit gets exactly one
trial batch and the circuit board has a single writer.
"""

from __future__ import annotations

import logging
import socket
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from dataclasses import dataclass, field
from typing import Callable

from client.gateway import ExchangeGateway, GatewayError, GatewayTimeout, TickerFunding
from config import Config, funding_interval_hours
from ingest.circuit import CircuitBoard, CircuitState, CircuitTransition
from ingest.schedule import (
    ExchangeSymbolSchedule,
    LiquidityFilters,
    build_missing_schedules,
    get_due_schedules,
    get_liquidity_filters,
    group_schedules_by_exchange,
    make_schedule,
)
from monitor.audit import AuditLog, EntityType
from state.checkpoint import CheckpointManager
from state.store import PipelineStore

logger = logging.getLogger(__name__)

CIRCUIT_STATE_KEY = "circuit_board"
INGEST_LEASE = "ingest"
INGEST_LEASE_TTL_SEC = 300.0


@dataclass
class IngestionResult:
    cycle_id: int
    due_schedules: int = 0
    exchanges_polled: list[str] = field(default_factory=list)
    exchanges_failed: dict[str, str] = field(default_factory=dict)
    exchanges_skipped: list[str] = field(default_factory=list)
    snapshots_written: int = 0
    schedules_discovered: int = 0
    skipped_reason: str = ""

    def to_stats(self) -> dict:
        return {
            "due_schedules": self.due_schedules,
            "exchanges_polled": self.exchanges_polled,
            "exchanges_failed": self.exchanges_failed,
            "exchanges_skipped": self.exchanges_skipped,
            "snapshots_written": self.snapshots_written,
            "schedules_discovered": self.schedules_discovered,
            "skipped_reason": self.skipped_reason,
        }


def load_circuit_board(checkpoint: CheckpointManager, cfg: Config) -> CircuitBoard:
    board = checkpoint.load(CIRCUIT_STATE_KEY, CircuitBoard) or CircuitBoard()
    return board.configure(
        failure_threshold=cfg.circuit_failure_threshold,
        base_cooldown_sec=cfg.circuit_cooldown_sec,
        max_cooldown_sec=cfg.circuit_max_cooldown_sec,
        trial_timeout_sec=cfg.fetch_timeout_sec * 2,
    )


def snapshot_row(
    cfg: Config,
    exchange: str,
    row: TickerFunding,
    observed_at: float,
    filters: LiquidityFilters,
) -> dict:
    interval = row.funding_interval_hours or funding_interval_hours(cfg, exchange)
    return {
        "exchange": exchange,
        "symbol": row.symbol,
        "mark_price": row.mark_price,
        "funding_rate": row.funding_rate,
        "funding_interval_hours": interval,
        "next_funding_time": row.next_funding_time,
        "open_interest": row.open_interest,
        "volume_24h": row.volume_24h,
        "bid_price": row.bid_price,
        "ask_price": row.ask_price,
        "is_liquid": int(filters.passes(row)),
        "observed_at": observed_at,
    }


def fetch_batches(
    gateway: ExchangeGateway,
    exchanges: list[str],
    timeout_sec: float,
    max_workers: int,
) -> dict[str, list[TickerFunding] | GatewayError]:
    """
    One task per exchange, joined before returning. Each exchange resolves to
    its rows or the GatewayError that stopped it; siblings are never cancelled.
    """
    if not exchanges:
        return {}
    results: dict[str, list[TickerFunding] | GatewayError] = {}
    pool = ThreadPoolExecutor(max_workers=min(max_workers, len(exchanges)))
    try:
        futures = {ex: pool.submit(gateway.fetch_batch, ex) for ex in exchanges}
        wait(list(futures.values()), timeout=timeout_sec)
        for ex, future in futures.items():
            if not future.done():
                future.cancel()
                results[ex] = GatewayTimeout(ex, f"batch fetch exceeded {timeout_sec:.1f}s")
                continue
            try:
                results[ex] = future.result(timeout=0)
            except FutureTimeout:
                results[ex] = GatewayTimeout(ex, f"batch fetch exceeded {timeout_sec:.1f}s")
            except GatewayError as e:
                results[ex] = e
            except Exception as e:
                results[ex] = GatewayError(ex, e)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
    return results


def _audit_transition(audit: AuditLog, transition: CircuitTransition) -> None:
    details = {
        "from": transition.from_state.value,
        "to": transition.to_state.value,
        "consecutive_failures": transition.consecutive_failures,
        "cooldown_sec": transition.cooldown_sec,
    }
    action = f"CIRCUIT_{transition.to_state.value.upper()}"
    if transition.to_state == CircuitState.OPEN:
        audit.warn(action, EntityType.EXCHANGE, transition.exchange, **details)
    else:
        audit.info(action, EntityType.EXCHANGE, transition.exchange, **details)


def run_ingestion(
    cfg: Config,
    store: PipelineStore,
    gateway: ExchangeGateway,
    checkpoint: CheckpointManager,
    audit: AuditLog,
    clock: Callable[[], float] = time.time,
    owner: str | None = None,
) -> IngestionResult:
    """Run one ingestion pass. Only storage errors escape; exchange failures are recorded."""
    now = clock()
    owner = owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
    if not store.acquire_lease(INGEST_LEASE, owner, INGEST_LEASE_TTL_SEC, now):
        logger.info("Another ingestion pass holds the lease, skipping")
        audit.warn("INGEST_BUSY", EntityType.SYSTEM, INGEST_LEASE, owner=owner)
        audit.flush()
        return IngestionResult(cycle_id=0, skipped_reason="lease_held")

    try:
        cycle_id = store.start_cycle("ingest", now)
        try:
            return _ingest(cfg, store, gateway, checkpoint, audit, clock, now, IngestionResult(cycle_id=cycle_id))
        except Exception as e:
            store.rollback()
            store.finish_cycle(cycle_id, "error", error=str(e), finished_at=clock())
            audit.flush()
            raise
    finally:
        store.release_lease(INGEST_LEASE, owner)


def _ingest(
    cfg: Config,
    store: PipelineStore,
    gateway: ExchangeGateway,
    checkpoint: CheckpointManager,
    audit: AuditLog,
    clock: Callable[[], float],
    now: float,
    result: IngestionResult,
) -> IngestionResult:
    board = load_circuit_board(checkpoint, cfg)
    for transition in board.refresh(now):
        _audit_transition(audit, transition)

    schedules = [ExchangeSymbolSchedule.from_row(r) for r in store.get_schedules()]
    created = build_missing_schedules(cfg, gateway.exchanges, schedules)
    if created:
        logger.info("Created %d schedules", len(created))
        schedules.extend(created)
    by_key = {s.key: s for s in schedules}

    polled = [s for s in schedules if s.exchange in gateway.exchanges]
    due = get_due_schedules(polled, board, now)
    result.due_schedules = len(due)
    groups = group_schedules_by_exchange(due)
    result.exchanges_skipped = sorted(
        {s.exchange for s in polled if s.active and not board.allows(s.exchange, now)}
    )
    for ex in result.exchanges_skipped:
        logger.info("Skipping %s: circuit %s", ex, board.state(ex).value)

    for ex in groups:
        board.begin_call(ex, now)

    batches = fetch_batches(gateway, sorted(groups), cfg.fetch_timeout_sec, cfg.fetch_workers)
    completed_at = clock()
    filters = get_liquidity_filters(cfg)

    snapshots: list[dict] = []
    touched: list[ExchangeSymbolSchedule] = list(created)
    for ex in sorted(groups):
        outcome = batches[ex]
        group = [by_key[(ex, sym)] for sym in sorted(groups[ex])]
        touched.extend(group)

        if isinstance(outcome, GatewayError):
            result.exchanges_failed[ex] = str(outcome.cause)
            logger.warning("Batch fetch failed for %s: %s", ex, outcome.cause)
            audit.warn(
                "FETCH_FAILED", EntityType.EXCHANGE, ex,
                error=str(outcome.cause), timeout=isinstance(outcome, GatewayTimeout),
                symbols=len(group),
            )
            for sched in group:
                if sched.record_failure(completed_at, cfg.schedule_deactivate_after_failures):
                    audit.warn(
                        "SCHEDULE_DEACTIVATED", EntityType.SCHEDULE, f"{ex}:{sched.symbol}",
                        consecutive_failures=sched.consecutive_failures,
                    )
            transition = board.record_failure(ex, completed_at)
            if transition:
                _audit_transition(audit, transition)
            continue

        result.exchanges_polled.append(ex)
        rows = {r.symbol: r for r in outcome}
        for sched in group:
            row = rows.get(sched.symbol)
            if row is None:
                # Exchange answered but no longer lists the symbol
                if sched.record_failure(completed_at, cfg.schedule_deactivate_after_failures):
                    audit.warn(
                        "SCHEDULE_DEACTIVATED", EntityType.SCHEDULE, f"{ex}:{sched.symbol}",
                        consecutive_failures=sched.consecutive_failures, reason="symbol missing from batch",
                    )
                continue
            sched.record_success(completed_at)
            snapshots.append(snapshot_row(cfg, ex, row, completed_at, filters))

        if cfg.auto_discover_symbols:
            discovered = _discover(cfg, ex, rows, by_key, filters)
            for sched in discovered:
                sched.record_success(completed_at)
                by_key[sched.key] = sched
                touched.append(sched)
                snapshots.append(snapshot_row(cfg, ex, rows[sched.symbol], completed_at, filters))
                audit.info("SCHEDULE_DISCOVERED", EntityType.SCHEDULE, f"{ex}:{sched.symbol}", tier=sched.tier)
            result.schedules_discovered += len(discovered)

        transition = board.record_success(ex, completed_at)
        if transition:
            _audit_transition(audit, transition)

    # Schedules of skipped exchanges still mirror their circuit
    touched_keys = {s.key for s in touched}
    touched.extend(
        s for s in polled if s.key not in touched_keys and s.circuit_state != board.state(s.exchange)
    )
    for sched in touched:
        sched.circuit_state = board.state(sched.exchange)

    store.begin_transaction()
    try:
        store.insert_snapshots(snapshots, commit=False)
        store.upsert_schedules([s.to_row() for s in touched], commit=False)
        store.commit()
    except Exception:
        store.rollback()
        raise
    checkpoint.save(CIRCUIT_STATE_KEY, board)
    pruned = store.prune_snapshots(now - cfg.snapshot_retention_sec)
    if pruned:
        logger.debug("Pruned %d superseded snapshots", pruned)

    result.snapshots_written = len(snapshots)
    status = "ok" if not result.exchanges_failed or result.exchanges_polled else "failed"
    store.finish_cycle(result.cycle_id, status, result.to_stats(), finished_at=clock())
    audit.flush()
    logger.info(
        "Ingestion: %d due, %d exchanges ok, %d failed, %d skipped, %d snapshots",
        result.due_schedules, len(result.exchanges_polled), len(result.exchanges_failed),
        len(result.exchanges_skipped), result.snapshots_written,
    )
    return result


def _discover(
    cfg: Config,
    exchange: str,
    rows: dict[str, TickerFunding],
    known: dict[tuple[str, str], ExchangeSymbolSchedule],
    filters: LiquidityFilters,
) -> list[ExchangeSymbolSchedule]:
    excluded = set(cfg.excluded_symbols)
    found = []
    for symbol in sorted(rows):
        if (exchange, symbol) in known or symbol in excluded:
            continue
        if not filters.passes(rows[symbol]):
            continue
        found.append(make_schedule(cfg, exchange, symbol, cfg.symbol_tiers.get(symbol, cfg.discovery_tier)))
    return found
