"""
Metrics and scoring engine. Turns the latest snapshots into ranked,
cost-aware trading signals.

Per cycle:
  1. keep fresh, liquid snapshots from exchanges whose circuit is not open
  2. normalize funding to 8h and pair every two exchanges quoting a symbol
  3. spread = short rate - long rate; net = spread - fees - slippage
  4. reject below the tier's minimum edge or above its max price spread
  5. score, sort (score desc, cheaper fees first), emit signals

compute_candidates() is pure: identical snapshots and config give identical
output. run_scoring() wires it to the store.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from config import Config, effective_fee_bps, get_exchange_config
from ingest.circuit import CircuitState
from ingest.cycle import load_circuit_board
from scanner.funding import normalize
from scanner.models import ArbitrageOpportunity, ExchangeRole, MarketSnapshot, RiskTier, TradingSignal
from scanner.risk_tier import classify_risk_tier
from scanner.scorer import ScorePolicy, pair_liquidity_score, policy_from_config
from state.checkpoint import CheckpointManager
from state.store import PipelineStore

logger = logging.getLogger(__name__)

REJECT_MIN_EDGE = "below_min_edge"
REJECT_PRICE_SPREAD = "price_spread_too_wide"


@dataclass(frozen=True)
class Candidate:
    """A scored opportunity; reject_reason is empty when it qualifies as a signal."""
    opportunity: ArbitrageOpportunity
    score: float
    reject_reason: str = ""

    @property
    def qualifies(self) -> bool:
        return not self.reject_reason


@dataclass
class ScoringResult:
    cycle_id: int
    candidates: list[Candidate] = field(default_factory=list)
    signals: list[TradingSignal] = field(default_factory=list)
    snapshots_used: int = 0
    excluded_exchanges: list[str] = field(default_factory=list)


def snapshot_from_row(row: dict) -> MarketSnapshot:
    return MarketSnapshot(
        exchange=row["exchange"],
        symbol=row["symbol"],
        mark_price=row["mark_price"],
        funding_rate=row["funding_rate"],
        funding_interval_hours=row["funding_interval_hours"],
        next_funding_time=row.get("next_funding_time"),
        open_interest=row.get("open_interest") or 0.0,
        volume_24h=row.get("volume_24h") or 0.0,
        observed_at=row["observed_at"],
        bid_price=row.get("bid_price") or 0.0,
        ask_price=row.get("ask_price") or 0.0,
        is_liquid=bool(row.get("is_liquid", 1)),
    )


def exchange_role(cfg: Config, exchange: str) -> ExchangeRole:
    """Configured role; exchanges outside the allocation table may take either side."""
    ex = get_exchange_config(cfg, exchange)
    return ExchangeRole(ex.role) if ex else ExchangeRole.BOTH


def _can_long(role: ExchangeRole) -> bool:
    return role in (ExchangeRole.LONG, ExchangeRole.BOTH)


def _can_short(role: ExchangeRole) -> bool:
    return role in (ExchangeRole.SHORT, ExchangeRole.BOTH)


def usable_snapshots(
    snapshots: list[MarketSnapshot],
    cfg: Config,
    now: float,
    excluded_exchanges: frozenset[str] | set[str] = frozenset(),
) -> list[MarketSnapshot]:
    """Drop stale, illiquid, unusable snapshots and those from excluded exchanges."""
    usable = []
    for snap in snapshots:
        if snap.exchange in excluded_exchanges:
            continue
        if now - snap.observed_at > cfg.snapshot_max_age_sec:
            continue
        if not snap.is_liquid or snap.mark_price <= 0 or snap.funding_interval_hours <= 0:
            continue
        usable.append(snap)
    return usable


def price_spread_bps(long_price: float, short_price: float) -> float:
    mid = (long_price + short_price) / 2
    if mid <= 0:
        return float("inf")
    return abs(long_price - short_price) / mid * 10_000


def evaluate_pair(
    long_snap: MarketSnapshot,
    short_snap: MarketSnapshot,
    cfg: Config,
    policy: ScorePolicy,
    now: float,
) -> Candidate | None:
    """Score one ordered pair. None when the spread captures nothing."""
    long_rate = normalize(long_snap.funding_rate, long_snap.funding_interval_hours)
    short_rate = normalize(short_snap.funding_rate, short_snap.funding_interval_hours)
    spread_bps = (short_rate - long_rate) * 10_000
    if spread_bps <= 0:
        return None

    fee_bps = effective_fee_bps(cfg, long_snap.exchange, short_snap.exchange)
    slippage_bps = cfg.slippage_estimate_bps
    net_edge_bps = spread_bps - fee_bps - slippage_bps
    px_spread = price_spread_bps(long_snap.mark_price, short_snap.mark_price)
    liquidity = pair_liquidity_score(long_snap, short_snap)
    tier = classify_risk_tier(long_snap.symbol, liquidity, cfg)

    opp = ArbitrageOpportunity(
        symbol=long_snap.symbol,
        long_exchange=long_snap.exchange,
        short_exchange=short_snap.exchange,
        long_funding_rate=long_rate,
        short_funding_rate=short_rate,
        spread_bps=spread_bps,
        fee_bps=fee_bps,
        slippage_bps=slippage_bps,
        net_edge_bps=net_edge_bps,
        price_spread_bps=px_spread,
        liquidity_score=liquidity,
        risk_tier=tier,
        long_mark_price=long_snap.mark_price,
        short_mark_price=short_snap.mark_price,
        computed_at=now,
    )

    thresholds = cfg.tier_thresholds.get(tier.value)
    reject = ""
    if thresholds is None or net_edge_bps <= thresholds.min_profit_bps:
        reject = REJECT_MIN_EDGE
    elif px_spread > thresholds.max_spread_bps:
        reject = REJECT_PRICE_SPREAD
    return Candidate(
        opportunity=opp,
        score=policy.score(net_edge_bps, liquidity, tier),
        reject_reason=reject,
    )


def _rank_key(c: Candidate) -> tuple:
    o = c.opportunity
    return (-c.score, o.fee_bps, o.symbol, o.long_exchange, o.short_exchange)


def compute_candidates(
    snapshots: list[MarketSnapshot],
    cfg: Config,
    now: float,
    policy: ScorePolicy | None = None,
    excluded_exchanges: frozenset[str] | set[str] = frozenset(),
) -> list[Candidate]:
    """Every ordered, role-compatible pair with positive spread, best first."""
    policy = policy or policy_from_config(cfg)
    by_symbol: dict[str, list[MarketSnapshot]] = defaultdict(list)
    for snap in usable_snapshots(snapshots, cfg, now, excluded_exchanges):
        by_symbol[snap.symbol].append(snap)

    candidates: list[Candidate] = []
    for symbol in sorted(by_symbol):
        snaps = sorted(by_symbol[symbol], key=lambda s: s.exchange)
        if len({s.exchange for s in snaps}) < 2:
            continue
        for long_snap, short_snap in itertools.permutations(snaps, 2):
            if long_snap.exchange == short_snap.exchange:
                continue
            if not _can_long(exchange_role(cfg, long_snap.exchange)):
                continue
            if not _can_short(exchange_role(cfg, short_snap.exchange)):
                continue
            candidate = evaluate_pair(long_snap, short_snap, cfg, policy, now)
            if candidate is not None:
                candidates.append(candidate)

    candidates.sort(key=_rank_key)
    return candidates


def build_signals(candidates: list[Candidate], cycle_id: int) -> list[TradingSignal]:
    qualified = [c for c in candidates if c.qualifies]
    return [
        TradingSignal(opportunity=c.opportunity, score=c.score, rank=i + 1, cycle_id=cycle_id)
        for i, c in enumerate(qualified)
    ]


def candidate_row(c: Candidate, rank: int | None) -> dict:
    o = c.opportunity
    return {
        "symbol": o.symbol,
        "long_exchange": o.long_exchange,
        "short_exchange": o.short_exchange,
        "long_funding_rate": o.long_funding_rate,
        "short_funding_rate": o.short_funding_rate,
        "spread_bps": o.spread_bps,
        "fee_bps": o.fee_bps,
        "slippage_bps": o.slippage_bps,
        "net_edge_bps": o.net_edge_bps,
        "price_spread_bps": o.price_spread_bps,
        "liquidity_score": o.liquidity_score,
        "risk_tier": o.risk_tier.value,
        "long_mark_price": o.long_mark_price,
        "short_mark_price": o.short_mark_price,
        "computed_at": o.computed_at,
        "score": c.score,
        "is_signal": int(c.qualifies),
        "rank": rank,
        "reject_reason": c.reject_reason,
    }


def signal_from_row(row: dict) -> TradingSignal:
    opp = ArbitrageOpportunity(
        symbol=row["symbol"],
        long_exchange=row["long_exchange"],
        short_exchange=row["short_exchange"],
        long_funding_rate=row["long_funding_rate"],
        short_funding_rate=row["short_funding_rate"],
        spread_bps=row["spread_bps"],
        fee_bps=row["fee_bps"],
        slippage_bps=row["slippage_bps"],
        net_edge_bps=row["net_edge_bps"],
        price_spread_bps=row["price_spread_bps"],
        liquidity_score=row["liquidity_score"],
        risk_tier=RiskTier(row["risk_tier"]),
        long_mark_price=row["long_mark_price"],
        short_mark_price=row["short_mark_price"],
        computed_at=row["computed_at"],
    )
    return TradingSignal(opportunity=opp, score=row["score"], rank=row["rank"], cycle_id=row["cycle_id"])


def run_scoring(
    cfg: Config,
    store: PipelineStore,
    checkpoint: CheckpointManager,
    policy: ScorePolicy | None = None,
    clock: Callable[[], float] = time.time,
) -> ScoringResult:
    """Score committed snapshots and persist this cycle's opportunities and signals."""
    now = clock()
    cycle_id = store.start_cycle("score", now)
    try:
        board = load_circuit_board(checkpoint, cfg)
        excluded = {name for name, c in board.circuits.items() if c.state == CircuitState.OPEN}
        snapshots = [
            snapshot_from_row(r)
            for r in store.get_latest_snapshots(since=now - cfg.snapshot_max_age_sec)
        ]
        candidates = compute_candidates(snapshots, cfg, now, policy, excluded)
        signals = build_signals(candidates, cycle_id)

        ranks = {s.opportunity.key: s.rank for s in signals}
        rows = [candidate_row(c, ranks.get(c.opportunity.key)) for c in candidates]
        store.insert_opportunities(cycle_id, rows)
    except Exception as e:
        store.rollback()
        store.finish_cycle(cycle_id, "error", error=str(e), finished_at=clock())
        raise

    result = ScoringResult(
        cycle_id=cycle_id,
        candidates=candidates,
        signals=signals,
        snapshots_used=len(snapshots),
        excluded_exchanges=sorted(excluded),
    )
    store.finish_cycle(
        cycle_id,
        "ok",
        {
            "snapshots": len(snapshots),
            "candidates": len(candidates),
            "signals": len(signals),
            "excluded_exchanges": result.excluded_exchanges,
        },
        finished_at=clock(),
    )
    if signals:
        top = signals[0].opportunity
        logger.info(
            "Scoring: %d candidates, %d signals; top %s long %s short %s net %.1fbps (score %.1f)",
            len(candidates), len(signals), top.symbol, top.long_exchange, top.short_exchange,
            top.net_edge_bps, signals[0].score,
        )
    else:
        logger.info("Scoring: %d candidates, no signals", len(candidates))
    return result
