"""
Autopilot executor. Turns the current scoring cycle's signals into hedged
positions within the risk budget, and unwinds positions on exit conditions.

One run, under the global executor lease:
  1. load control flags and the risk budget, reconcile exposure from the store
  2. resolve positions a crashed run left PENDING or CLOSING
  3. accrue funding on OPEN positions and close those hitting an exit
  4. trip the kill switch if the daily drawdown is exhausted or the open
     positions are down more than it
  5. open new hedges from fresh signals, best first

Paper and live modes share every check and transition; only the OrderClient
behind the gateway differs. A failure on one position is recorded and the run
moves on to the next.
"""

from __future__ import annotations

import logging
import socket
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable

from client.gateway import ExchangeGateway, GatewayError, OrderClient, OrderResult, OrderTimeout
from config import Config, is_valid_hedge_pair
from executor.control import EXECUTOR_LEASE, EXECUTOR_LEASE_TTL_SEC, RISK_STATE_KEY, load_budget, load_control
from executor.exits import accrue_funding, check_exit, notional_matches, realized_pnl_eur, unrealized_pnl_eur
from executor.positions import HedgePosition, HedgeStatus
from executor.risk import (
    RiskBudget,
    RiskLevel,
    RiskLimitExceeded,
    kill_switch_expired,
    risk_level,
    verify_can_open,
)
from monitor.audit import AuditLog, EntityType
from scanner.engine import signal_from_row
from scanner.funding import normalize
from scanner.models import TradingSignal
from state.checkpoint import CheckpointManager
from state.store import ACTIVE_POSITION_STATUSES, PipelineStore

logger = logging.getLogger(__name__)

LEASE_NAME = EXECUTOR_LEASE
LEASE_TTL_SEC = EXECUTOR_LEASE_TTL_SEC

# Order states after which the same client order id may be sent again
_RESUBMIT_STATUSES = ("not_found", "canceled", "expired", "rejected")


class UnwindFailed(Exception):
    """Raised when a filled leg could not be closed. The exposure needs manual attention."""
    pass


@dataclass
class ExecutionResult:
    mode: str
    skipped_reason: str = ""
    opened: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    signals_considered: int = 0


def _default_owner() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


def _position_id() -> str:
    return uuid.uuid4().hex[:16]


class AutopilotExecutor:
    def __init__(
        self,
        cfg: Config,
        store: PipelineStore,
        checkpoint: CheckpointManager,
        audit: AuditLog,
        order_clients: dict[str, OrderClient],
        clock: Callable[[], float] = time.time,
        owner: str | None = None,
        id_factory: Callable[[], str] = _position_id,
    ) -> None:
        self._cfg = cfg
        self._store = store
        self._checkpoint = checkpoint
        self._audit = audit
        self._gateways = {mode: ExchangeGateway({}, client) for mode, client in order_clients.items()}
        self._clock = clock
        self._owner = owner or _default_owner()
        self._new_id = id_factory

    def _gateway(self, mode: str) -> ExchangeGateway:
        gateway = self._gateways.get(mode)
        if gateway is None:
            raise RuntimeError(f"No order client configured for mode {mode!r}")
        return gateway

    # ── Run ──

    def run(self, signals: list[TradingSignal] | None = None) -> ExecutionResult:
        now = self._clock()
        if not self._store.acquire_lease(LEASE_NAME, self._owner, LEASE_TTL_SEC, now):
            self._audit.warn("EXECUTOR_BUSY", EntityType.SYSTEM, LEASE_NAME, owner=self._owner)
            self._audit.flush()
            return ExecutionResult(mode="", skipped_reason="lease_held")

        cycle_id = self._store.start_cycle("execute", now)
        try:
            result = self._run(now, signals)
        except Exception as e:
            self._store.rollback()
            self._store.finish_cycle(cycle_id, "error", error=str(e), finished_at=self._clock())
            raise
        else:
            self._store.finish_cycle(cycle_id, "ok", asdict(result), finished_at=self._clock())
            return result
        finally:
            self._audit.flush()
            self._store.release_lease(LEASE_NAME, self._owner)

    def _run(self, now: float, signals: list[TradingSignal] | None) -> ExecutionResult:
        control = load_control(self._checkpoint, self._cfg.mode)
        result = ExecutionResult(mode=control.mode)
        if control.mode == "off":
            result.skipped_reason = "mode_off"
            logger.info("Autopilot off, nothing to do")
            return result

        budget = load_budget(self._checkpoint)
        budget.roll_day(now)
        budget.reconcile(self._store.get_positions(ACTIVE_POSITION_STATUSES))

        if kill_switch_expired(budget, self._cfg, now):
            budget.reset_kill_switch()
            self._audit.action("KILL_SWITCH_RESET", EntityType.RISK, "kill_switch", actor="cooldown")

        try:
            self._recover_interrupted(budget, now, result)
            unrealized = self._manage_open_positions(budget, now, result)

            trip_reason = ""
            if risk_level(budget, self._cfg) == RiskLevel.STOPPED:
                trip_reason = "daily drawdown limit reached"
            elif unrealized < -self._cfg.max_daily_drawdown_eur:
                trip_reason = f"unrealized loss {-unrealized:.2f} EUR exceeds limit"
            if trip_reason and not budget.kill_switch_active:
                budget.trip_kill_switch(now, trip_reason)
                self._audit.error(
                    "KILL_SWITCH_TRIGGERED", EntityType.RISK, "kill_switch",
                    reason=trip_reason,
                    daily_pnl_eur=round(budget.daily_realized_drawdown_eur, 4),
                    unrealized_pnl_eur=round(unrealized, 4),
                    limit_eur=self._cfg.max_daily_drawdown_eur,
                )

            if not control.running:
                result.skipped_reason = "stopped"
                logger.info("Autopilot stopped: managing open positions only")
            else:
                if signals is None:
                    signals = self._current_signals(now)
                result.signals_considered = len(signals)
                for signal in signals:
                    self._try_open(signal, control.mode, budget, now, result)
        finally:
            self._checkpoint.save(RISK_STATE_KEY, budget)

        logger.info(
            "Autopilot (%s): %d opened, %d closed, %d failed, %d blocked; deployed %.2f EUR in %d hedges",
            result.mode, len(result.opened), len(result.closed), len(result.failed), len(result.blocked),
            budget.deployed_capital_eur, budget.open_hedge_count,
        )
        return result

    def _current_signals(self, now: float) -> list[TradingSignal]:
        """Signals of the latest successful scoring cycle, or none if that cycle is stale."""
        cycle = self._store.get_latest_cycle("score")
        if cycle is None:
            return []
        finished = cycle["finished_at"] or cycle["started_at"]
        age = now - finished
        if age > self._cfg.signal_max_age_sec:
            self._audit.info("SIGNALS_STALE", EntityType.SYSTEM, str(cycle["id"]), age_sec=round(age, 1))
            return []
        rows = self._store.get_opportunities(cycle["id"], signals_only=True)
        return [signal_from_row(r) for r in rows]

    # ── Entry ──

    def _try_open(
        self, signal: TradingSignal, mode: str, budget: RiskBudget, now: float, result: ExecutionResult,
    ) -> None:
        opp = signal.opportunity
        label = f"{opp.symbol} L:{opp.long_exchange} S:{opp.short_exchange}"

        if not is_valid_hedge_pair(self._cfg, opp.long_exchange, opp.short_exchange):
            result.blocked[label] = "invalid_hedge_pair"
            self._audit.warn(
                "ENTRY_BLOCKED", EntityType.OPPORTUNITY, label, reason="invalid_hedge_pair",
                long_exchange=opp.long_exchange, short_exchange=opp.short_exchange,
            )
            return

        existing = self._store.find_active_position(opp.symbol, opp.long_exchange, opp.short_exchange)
        if existing is not None:
            result.blocked[label] = "position_exists"
            self._audit.info(
                "ENTRY_SKIPPED", EntityType.OPPORTUNITY, label,
                reason="position_exists", position_id=existing["id"], status=existing["status"],
            )
            return

        size = self._cfg.hedge_size_eur
        try:
            verify_can_open(budget, self._cfg, opp.risk_tier.value, size)
        except RiskLimitExceeded as e:
            result.blocked[label] = e.reason
            self._audit.warn(
                "ENTRY_BLOCKED", EntityType.OPPORTUNITY, label, reason=e.reason, message=str(e),
                deployed_eur=round(budget.deployed_capital_eur, 2), open_hedges=budget.open_hedge_count,
                net_edge_bps=round(opp.net_edge_bps, 3),
            )
            return

        notional_usd = size / 2 * self._cfg.eur_usd_rate
        pos = HedgePosition(
            id=self._new_id(),
            symbol=opp.symbol,
            long_exchange=opp.long_exchange,
            short_exchange=opp.short_exchange,
            status=HedgeStatus.PENDING,
            mode=mode,
            risk_tier=opp.risk_tier.value,
            size_eur=size,
            created_at=now,
            updated_at=now,
            long_size=notional_usd / opp.long_mark_price,
            short_size=notional_usd / opp.short_mark_price,
            entry_spread_bps=opp.spread_bps,
            entry_net_edge_bps=opp.net_edge_bps,
        )
        pos.long_order_id = f"{pos.id}-L"
        pos.short_order_id = f"{pos.id}-S"

        # Client order ids are persisted before any order leaves
        try:
            self._store.insert_position(pos.to_row())
        except sqlite3.IntegrityError:
            result.blocked[label] = "position_exists"
            self._audit.warn("ENTRY_BLOCKED", EntityType.OPPORTUNITY, label, reason="position_exists")
            return

        self._audit.action(
            "HEDGE_EXECUTION_START", EntityType.POSITION, pos.id,
            symbol=opp.symbol, long_exchange=opp.long_exchange, short_exchange=opp.short_exchange,
            size_eur=size, mode=mode, spread_bps=round(opp.spread_bps, 3),
            net_edge_bps=round(opp.net_edge_bps, 3), score=round(signal.score, 3), rank=signal.rank,
        )
        try:
            self._open_legs(pos, budget, now, result)
        except Exception as e:
            logger.exception("Entry for %s failed unexpectedly", pos.label)
            if pos.status == HedgeStatus.PENDING:
                self._fail_position(pos, "HEDGE_EXECUTION_FAILED", str(e), result)
            else:
                result.errors[pos.id] = str(e)
                self._audit.error("POSITION_PROCESSING_ERROR", EntityType.POSITION, pos.id, error=str(e))

    def _open_legs(self, pos: HedgePosition, budget: RiskBudget, now: float, result: ExecutionResult) -> None:
        gateway = self._gateway(pos.mode)
        long_res = self._submit(gateway, pos.long_exchange, pos.symbol, "buy", pos.long_size, pos.long_order_id)
        if not long_res.filled:
            self._fail_position(
                pos, "HEDGE_EXECUTION_FAILED", f"long leg not filled ({long_res.status})", result,
            )
            return

        short_res = self._submit(gateway, pos.short_exchange, pos.symbol, "sell", pos.short_size, pos.short_order_id)
        if not short_res.filled:
            self._unwind_long(gateway, pos, long_res)
            self._fail_position(
                pos, "HEDGE_EXECUTION_FAILED", f"short leg not filled ({short_res.status})", result,
                long_unwound=True,
            )
            return

        self._complete_open(pos, long_res, short_res, budget, now, result)

    def _complete_open(
        self,
        pos: HedgePosition,
        long_res: OrderResult,
        short_res: OrderResult,
        budget: RiskBudget,
        now: float,
        result: ExecutionResult,
        counted: bool = False,
    ) -> None:
        long_notional = long_res.fill_price * (long_res.filled_size or pos.long_size)
        short_notional = short_res.fill_price * (short_res.filled_size or pos.short_size)
        if not notional_matches(long_notional, short_notional):
            self._audit.warn(
                "HEDGE_NOTIONAL_MISMATCH", EntityType.POSITION, pos.id,
                long_notional_usd=round(long_notional, 4), short_notional_usd=round(short_notional, 4),
            )

        pos.entry_long_price = long_res.fill_price
        pos.entry_short_price = short_res.fill_price
        if long_res.filled_size:
            pos.long_size = long_res.filled_size
        if short_res.filled_size:
            pos.short_size = short_res.filled_size
        pos.fees_eur = (long_res.fee_usd + short_res.fee_usd) / self._cfg.eur_usd_rate
        pos.opened_at = now
        pos.last_funding_at = now
        pos.transition_to(HedgeStatus.OPEN)
        self._persist(pos)
        if not counted:
            budget.record_open(pos.size_eur, pos.risk_tier)
        result.opened.append(pos.id)
        self._audit.action(
            "HEDGE_EXECUTED", EntityType.POSITION, pos.id,
            symbol=pos.symbol, long_exchange=pos.long_exchange, short_exchange=pos.short_exchange,
            entry_long_price=pos.entry_long_price, entry_short_price=pos.entry_short_price,
            fees_eur=round(pos.fees_eur, 4), mode=pos.mode,
        )

    def _unwind_long(self, gateway: ExchangeGateway, pos: HedgePosition, long_res: OrderResult) -> None:
        size = long_res.filled_size or pos.long_size
        unwind = self._submit(
            gateway, pos.long_exchange, pos.symbol, "buy", size, f"{pos.id}-LU", closing=True,
        )
        if unwind.filled:
            self._audit.action(
                "HEDGE_ROLLBACK_LONG", EntityType.POSITION, pos.id,
                exchange=pos.long_exchange, size=size, fill_price=unwind.fill_price,
            )
            return
        self._audit.error(
            "HEDGE_ROLLBACK_FAILED", EntityType.POSITION, pos.id,
            exchange=pos.long_exchange, size=size, status=unwind.status,
        )
        raise UnwindFailed(f"Long leg of {pos.label} still open on {pos.long_exchange} ({size} units)")

    def _fail_position(
        self, pos: HedgePosition, action: str, error: str, result: ExecutionResult, **details,
    ) -> None:
        pos.error = error
        pos.closed_at = self._clock()
        pos.transition_to(HedgeStatus.FAILED)
        self._persist(pos)
        result.failed.append(pos.id)
        self._audit.error(
            action, EntityType.POSITION, pos.id,
            symbol=pos.symbol, long_exchange=pos.long_exchange, short_exchange=pos.short_exchange,
            error=error, **details,
        )

    # ── Order plumbing ──

    def _submit(
        self,
        gateway: ExchangeGateway,
        exchange: str,
        symbol: str,
        side: str,
        size: float,
        client_order_id: str,
        closing: bool = False,
    ) -> OrderResult:
        """
        Place one order. A timeout is resolved by a status query on the same
        client order id before the outcome is decided; other gateway errors
        come back as an unfilled result.
        """
        try:
            if closing:
                return gateway.close_order(exchange, symbol, side, size, client_order_id)
            return gateway.place_order(exchange, symbol, side, size, client_order_id)
        except OrderTimeout as e:
            logger.warning("Order %s on %s timed out, querying status: %s", client_order_id, exchange, e.cause)
            try:
                status = gateway.get_order_status(exchange, symbol, client_order_id)
            except GatewayError as status_err:
                return OrderResult(
                    filled=False, fill_price=0.0, order_id="", client_order_id=client_order_id,
                    status=f"timeout; status unknown: {status_err.cause}",
                )
            if not status.filled:
                return OrderResult(
                    filled=False, fill_price=0.0, order_id=status.order_id, client_order_id=client_order_id,
                    status=f"timeout; {status.status or 'not filled'}",
                )
            return status
        except GatewayError as e:
            logger.warning("Order %s on %s failed: %s", client_order_id, exchange, e.cause)
            return OrderResult(
                filled=False, fill_price=0.0, order_id="", client_order_id=client_order_id,
                status=f"error: {e.cause}",
            )

    def _resolve(
        self,
        gateway: ExchangeGateway,
        exchange: str,
        symbol: str,
        side: str,
        size: float,
        client_order_id: str,
        closing: bool = False,
    ) -> OrderResult:
        """Status of an order a previous run may have sent; place it again if it never filled."""
        try:
            status = gateway.get_order_status(exchange, symbol, client_order_id)
        except GatewayError as e:
            logger.warning("Status query for %s on %s failed: %s", client_order_id, exchange, e.cause)
            status = None
        if status is not None and (status.filled or status.status not in _RESUBMIT_STATUSES):
            return status
        return self._submit(gateway, exchange, symbol, side, size, client_order_id, closing=closing)

    def _persist(self, pos: HedgePosition) -> None:
        pos.updated_at = self._clock()
        row = pos.to_row()
        del row["id"]
        self._store.update_position(pos.id, row)

    # ── Recovery ──

    def _recover_interrupted(self, budget: RiskBudget, now: float, result: ExecutionResult) -> None:
        """
        Under the lease nothing else can be mid-flight, so PENDING or CLOSING
        rows belong to a run that died or a close that did not complete.
        Entries are settled from the exchange's view of their client order
        ids; closes are resumed.
        """
        for row in self._store.get_positions(("pending", "closing")):
            pos = HedgePosition.from_row(row)
            try:
                gateway = self._gateway(pos.mode)
                if pos.status == HedgeStatus.PENDING:
                    self._recover_pending(gateway, pos, budget, now, result)
                else:
                    self._audit.warn("HEDGE_CLOSE_RESUMED", EntityType.POSITION, pos.id)
                    self._close(gateway, pos, pos.close_reason or "resumed", {}, budget, result, recovering=True)
            except Exception as e:
                logger.exception("Recovery of %s failed", pos.label)
                result.errors[pos.id] = str(e)
                self._audit.error("POSITION_PROCESSING_ERROR", EntityType.POSITION, pos.id, error=str(e))

    def _recover_pending(
        self, gateway: ExchangeGateway, pos: HedgePosition, budget: RiskBudget, now: float, result: ExecutionResult,
    ) -> None:
        long_res = gateway.get_order_status(pos.long_exchange, pos.symbol, pos.long_order_id)
        short_res = gateway.get_order_status(pos.short_exchange, pos.symbol, pos.short_order_id)
        if long_res.filled and short_res.filled:
            self._audit.warn("HEDGE_RECOVERED_OPEN", EntityType.POSITION, pos.id)
            # reconcile() already counted the row
            self._complete_open(pos, long_res, short_res, budget, now, result, counted=True)
            return
        if long_res.filled:
            self._unwind_long(gateway, pos, long_res)
        if short_res.filled:
            unwind = self._submit(
                gateway, pos.short_exchange, pos.symbol, "sell", short_res.filled_size or pos.short_size,
                f"{pos.id}-SU", closing=True,
            )
            if not unwind.filled:
                raise UnwindFailed(f"Short leg of {pos.label} still open on {pos.short_exchange}")
        self._fail_position(pos, "HEDGE_EXECUTION_FAILED", "entry interrupted", result, recovered=True)
        budget.record_release(pos.size_eur, pos.risk_tier)

    # ── Open positions ──

    def _manage_open_positions(self, budget: RiskBudget, now: float, result: ExecutionResult) -> float:
        """Accrue and apply exits. Returns the unrealized PnL of positions left open with fresh marks."""
        snapshots = {
            (r["exchange"], r["symbol"]): r
            for r in self._store.get_latest_snapshots(since=now - self._cfg.snapshot_max_age_sec)
        }
        unrealized = 0.0
        for row in self._store.get_positions(("open",)):
            pos = HedgePosition.from_row(row)
            try:
                unrealized += self._manage(pos, snapshots, budget, now, result)
            except Exception as e:
                logger.exception("Managing %s failed", pos.label)
                result.errors[pos.id] = str(e)
                self._audit.error("POSITION_PROCESSING_ERROR", EntityType.POSITION, pos.id, error=str(e))
        return unrealized

    def _manage(
        self,
        pos: HedgePosition,
        snapshots: dict[tuple[str, str], dict],
        budget: RiskBudget,
        now: float,
        result: ExecutionResult,
    ) -> float:
        long_snap = snapshots.get((pos.long_exchange, pos.symbol))
        short_snap = snapshots.get((pos.short_exchange, pos.symbol))
        spread = None
        long_price = short_price = None
        if long_snap and short_snap:
            spread = (
                normalize(short_snap["funding_rate"], short_snap["funding_interval_hours"])
                - normalize(long_snap["funding_rate"], long_snap["funding_interval_hours"])
            ) * 10_000
            long_price = long_snap["mark_price"]
            short_price = short_snap["mark_price"]

        accrued, periods = accrue_funding(pos, spread if spread is not None else pos.entry_spread_bps, now)
        if periods:
            self._persist(pos)
            self._audit.info(
                "FUNDING_ACCRUED", EntityType.POSITION, pos.id,
                periods=periods, amount_eur=round(accrued, 6), total_eur=round(pos.funding_collected_eur, 6),
            )

        decision = check_exit(pos, self._cfg, now, spread, long_price, short_price)
        if decision is None:
            if long_price is None or short_price is None:
                return 0.0
            return unrealized_pnl_eur(pos, long_price, short_price)
        self._close(self._gateway(pos.mode), pos, decision.reason, decision.details, budget, result)
        return 0.0

    def _close(
        self,
        gateway: ExchangeGateway,
        pos: HedgePosition,
        reason: str,
        details: dict,
        budget: RiskBudget,
        result: ExecutionResult,
        recovering: bool = False,
    ) -> None:
        if pos.status == HedgeStatus.OPEN:
            pos.close_reason = reason
            pos.transition_to(HedgeStatus.CLOSING)
            self._persist(pos)
            self._audit.action(
                "HEDGE_CLOSE_START", EntityType.POSITION, pos.id,
                symbol=pos.symbol, reason=reason, **details,
            )

        place = self._resolve if recovering else self._submit
        long_res = place(gateway, pos.long_exchange, pos.symbol, "buy", pos.long_size, f"{pos.id}-LC", closing=True)
        short_res = place(gateway, pos.short_exchange, pos.symbol, "sell", pos.short_size, f"{pos.id}-SC", closing=True)

        if not (long_res.filled and short_res.filled):
            # Still CLOSING: capital stays counted, the key stays taken, and
            # the next run resumes the unfilled leg by its client order id
            pos.error = f"close incomplete (long {long_res.status}, short {short_res.status})"
            self._persist(pos)
            result.errors[pos.id] = pos.error
            self._audit.error(
                "HEDGE_CLOSE_INCOMPLETE", EntityType.POSITION, pos.id,
                symbol=pos.symbol, long_exchange=pos.long_exchange, short_exchange=pos.short_exchange,
                long_closed=long_res.filled, long_status=long_res.status,
                short_closed=short_res.filled, short_status=short_res.status,
            )
            return

        exit_fees = (long_res.fee_usd + short_res.fee_usd) / self._cfg.eur_usd_rate
        pnl = realized_pnl_eur(pos, long_res.fill_price, short_res.fill_price, exit_fees)
        pos.exit_long_price = long_res.fill_price
        pos.exit_short_price = short_res.fill_price
        pos.fees_eur += exit_fees
        pos.realized_pnl = pnl
        pos.error = ""
        pos.closed_at = self._clock()
        pos.transition_to(HedgeStatus.CLOSED)
        self._persist(pos)

        budget.record_realized(pnl)
        budget.record_release(pos.size_eur, pos.risk_tier)
        result.closed.append(pos.id)
        self._audit.action(
            "HEDGE_CLOSED", EntityType.POSITION, pos.id,
            symbol=pos.symbol, reason=pos.close_reason, realized_pnl_eur=round(pnl, 4),
            funding_eur=round(pos.funding_collected_eur, 4), fees_eur=round(pos.fees_eur, 4),
            exit_long_price=pos.exit_long_price, exit_short_price=pos.exit_short_price,
        )
