"""
Exit policy, funding accrual and PnL for open hedges.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from config import Config
from executor.positions import HedgePosition
from scanner.funding import CANONICAL_INTERVAL_HOURS

NOTIONAL_TOLERANCE = 0.01  # 1% leg mismatch allowed


@dataclass(frozen=True)
class ExitDecision:
    reason: str
    details: dict


def leg_size_eur(position: HedgePosition) -> float:
    return position.size_eur / 2


def leg_moves_eur(
    position: HedgePosition, long_price: float, short_price: float,
) -> tuple[float, float]:
    """Mark-to-market of each leg in EUR: (long move, short move)."""
    leg = leg_size_eur(position)
    long_move = 0.0
    short_move = 0.0
    if position.entry_long_price:
        long_move = leg * (long_price - position.entry_long_price) / position.entry_long_price
    if position.entry_short_price:
        short_move = leg * (position.entry_short_price - short_price) / position.entry_short_price
    return long_move, short_move


def unrealized_pnl_eur(position: HedgePosition, long_price: float, short_price: float) -> float:
    long_move, short_move = leg_moves_eur(position, long_price, short_price)
    return long_move + short_move + position.funding_collected_eur - position.fees_eur


def realized_pnl_eur(
    position: HedgePosition, exit_long_price: float, exit_short_price: float, exit_fees_eur: float,
) -> float:
    """Long move + short move + funding captured - entry and exit fees."""
    long_move, short_move = leg_moves_eur(position, exit_long_price, exit_short_price)
    return long_move + short_move + position.funding_collected_eur - position.fees_eur - exit_fees_eur


def notional_matches(long_notional: float, short_notional: float, tolerance: float = NOTIONAL_TOLERANCE) -> bool:
    larger = max(long_notional, short_notional)
    if larger <= 0:
        return False
    return abs(long_notional - short_notional) / larger <= tolerance


def accrue_funding(position: HedgePosition, spread_bps: float, now: float) -> tuple[float, int]:
    """
    Funding earned for every full 8h period since the last accrual, at the
    given 8h-normalized spread on one leg's notional. Returns (eur, periods)
    and advances position.last_funding_at by whole periods.
    """
    start = position.last_funding_at or position.opened_at
    if start is None:
        return 0.0, 0
    period_sec = CANONICAL_INTERVAL_HOURS * 3600
    periods = int(math.floor((now - start) / period_sec))
    if periods <= 0:
        return 0.0, 0
    amount = periods * leg_size_eur(position) * spread_bps / 10_000
    position.funding_collected_eur += amount
    position.last_funding_at = start + periods * period_sec
    return amount, periods


def check_exit(
    position: HedgePosition,
    cfg: Config,
    now: float,
    current_spread_bps: float | None,
    long_price: float | None,
    short_price: float | None,
) -> ExitDecision | None:
    """
    First matching exit condition, or None to keep holding. Order:
    manual request, max holding time, profit target, spread reversal or
    collapse, stop loss. Market-based checks are skipped without fresh data.
    """
    if position.close_requested:
        return ExitDecision("manual", {})

    opened_at = position.opened_at or position.created_at
    held_hours = (now - opened_at) / 3600
    if held_hours >= cfg.max_holding_hours:
        return ExitDecision("max_holding_time", {"held_hours": round(held_hours, 2)})

    have_prices = bool(long_price and short_price)
    pnl = unrealized_pnl_eur(position, long_price, short_price) if have_prices else None

    intervals_held = held_hours / CANONICAL_INTERVAL_HOURS
    expected = leg_size_eur(position) * position.entry_net_edge_bps / 10_000
    if pnl is not None and expected > 0 and intervals_held >= cfg.min_holding_intervals:
        if pnl >= expected * cfg.profit_target_pct / 100:
            return ExitDecision("profit_target", {"pnl_eur": round(pnl, 4), "expected_eur": round(expected, 4)})

    if current_spread_bps is not None:
        if current_spread_bps <= 0:
            return ExitDecision("spread_reversal", {"spread_bps": round(current_spread_bps, 3)})
        if current_spread_bps < cfg.spread_collapse_bps:
            return ExitDecision("spread_collapse", {"spread_bps": round(current_spread_bps, 3)})

    if pnl is not None:
        pnl_pct = pnl / position.size_eur * 100
        if pnl_pct <= -cfg.stop_loss_pct:
            return ExitDecision("stop_loss", {"pnl_eur": round(pnl, 4), "pnl_pct": round(pnl_pct, 3)})

    return None
