"""
Capital and drawdown limits for the autopilot. Fail-fast on violations.

RiskBudget is mutated only by the executor while it holds the executor lease,
and persisted through CheckpointManager between invocations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from config import Config

logger = logging.getLogger(__name__)


class RiskLimitExceeded(Exception):
    """Raised when opening a hedge would breach a limit. The entry should be skipped."""

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class RiskLevel(str, Enum):
    NORMAL = "normal"
    CAUTIOUS = "cautious"
    STOPPED = "stopped"


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass
class RiskBudget:
    deployed_capital_eur: float = 0.0
    open_hedge_count: int = 0
    # Signed sum of today's realized PnL; negative means drawdown
    daily_realized_drawdown_eur: float = 0.0
    day: str = ""
    open_by_tier: dict[str, int] = field(default_factory=dict)
    kill_switch_active: bool = False
    kill_switch_at: float | None = None
    kill_switch_reason: str = ""

    def roll_day(self, now: float) -> bool:
        """Reset the daily drawdown at the UTC day boundary. Returns True if reset."""
        today = utc_day(now)
        if self.day == today:
            return False
        if self.day:
            logger.info(
                "Daily risk reset: %s realized %.2f EUR", self.day, self.daily_realized_drawdown_eur,
            )
        self.day = today
        self.daily_realized_drawdown_eur = 0.0
        return True

    def reconcile(self, active_positions: list[dict]) -> None:
        """Rebuild exposure counters from the non-terminal positions in the store."""
        self.deployed_capital_eur = sum(p["size_eur"] for p in active_positions)
        self.open_hedge_count = len(active_positions)
        by_tier: dict[str, int] = {}
        for p in active_positions:
            by_tier[p["risk_tier"]] = by_tier.get(p["risk_tier"], 0) + 1
        self.open_by_tier = by_tier

    def record_open(self, size_eur: float, tier: str) -> None:
        self.deployed_capital_eur += size_eur
        self.open_hedge_count += 1
        self.open_by_tier[tier] = self.open_by_tier.get(tier, 0) + 1

    def record_release(self, size_eur: float, tier: str) -> None:
        """Capital freed by a position reaching a terminal state."""
        self.deployed_capital_eur = max(0.0, self.deployed_capital_eur - size_eur)
        self.open_hedge_count = max(0, self.open_hedge_count - 1)
        self.open_by_tier[tier] = max(0, self.open_by_tier.get(tier, 0) - 1)

    def record_realized(self, pnl_eur: float) -> None:
        self.daily_realized_drawdown_eur += pnl_eur

    def trip_kill_switch(self, now: float, reason: str) -> None:
        self.kill_switch_active = True
        self.kill_switch_at = now
        self.kill_switch_reason = reason

    def reset_kill_switch(self) -> None:
        self.kill_switch_active = False
        self.kill_switch_at = None
        self.kill_switch_reason = ""

    def to_dict(self) -> dict:
        return {
            "deployed_capital_eur": self.deployed_capital_eur,
            "open_hedge_count": self.open_hedge_count,
            "daily_realized_drawdown_eur": self.daily_realized_drawdown_eur,
            "day": self.day,
            "open_by_tier": dict(self.open_by_tier),
            "kill_switch_active": self.kill_switch_active,
            "kill_switch_at": self.kill_switch_at,
            "kill_switch_reason": self.kill_switch_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> RiskBudget:
        return cls(
            deployed_capital_eur=float(data.get("deployed_capital_eur", 0.0)),
            open_hedge_count=int(data.get("open_hedge_count", 0)),
            daily_realized_drawdown_eur=float(data.get("daily_realized_drawdown_eur", 0.0)),
            day=data.get("day", ""),
            open_by_tier={k: int(v) for k, v in data.get("open_by_tier", {}).items()},
            kill_switch_active=bool(data.get("kill_switch_active", False)),
            kill_switch_at=data.get("kill_switch_at"),
            kill_switch_reason=data.get("kill_switch_reason", ""),
        )


def risk_level(budget: RiskBudget, cfg: Config) -> RiskLevel:
    drawdown = -min(budget.daily_realized_drawdown_eur, 0.0)
    if drawdown >= cfg.max_daily_drawdown_eur:
        return RiskLevel.STOPPED
    if drawdown >= cfg.caution_drawdown_eur:
        return RiskLevel.CAUTIOUS
    return RiskLevel.NORMAL


def kill_switch_expired(budget: RiskBudget, cfg: Config, now: float) -> bool:
    if not budget.kill_switch_active or budget.kill_switch_at is None:
        return False
    return now - budget.kill_switch_at >= cfg.kill_switch_cooldown_hours * 3600


def verify_can_open(budget: RiskBudget, cfg: Config, tier: str, size_eur: float) -> None:
    """Raise RiskLimitExceeded if opening *size_eur* in *tier* breaches any limit."""
    if budget.kill_switch_active:
        raise RiskLimitExceeded("kill_switch", f"Kill switch active: {budget.kill_switch_reason}")

    if budget.daily_realized_drawdown_eur <= -cfg.max_daily_drawdown_eur:
        raise RiskLimitExceeded(
            "daily_drawdown",
            f"Daily drawdown exhausted: {budget.daily_realized_drawdown_eur:.2f} <= -{cfg.max_daily_drawdown_eur:.2f}",
        )

    level = risk_level(budget, cfg)
    if level != RiskLevel.NORMAL:
        raise RiskLimitExceeded(
            "risk_level", f"Risk level {level.value}: daily PnL {budget.daily_realized_drawdown_eur:.2f} EUR",
        )

    if budget.open_hedge_count >= cfg.max_concurrent_hedges:
        raise RiskLimitExceeded(
            "max_concurrent_hedges",
            f"Open hedges {budget.open_hedge_count} >= max {cfg.max_concurrent_hedges}",
        )

    if budget.deployed_capital_eur + size_eur > cfg.max_deployed_eur:
        raise RiskLimitExceeded(
            "max_deployed",
            f"Deployed {budget.deployed_capital_eur:.2f} + {size_eur:.2f} > max {cfg.max_deployed_eur:.2f} EUR",
        )

    thresholds = cfg.tier_thresholds.get(tier)
    bucket_max = thresholds.max_positions if thresholds else 0
    if budget.open_by_tier.get(tier, 0) >= bucket_max:
        raise RiskLimitExceeded(
            "tier_bucket_full",
            f"Tier {tier} bucket full: {budget.open_by_tier.get(tier, 0)} >= {bucket_max}",
        )

    stressed_loss = (budget.deployed_capital_eur + size_eur) * cfg.stress_test_multiplier / 100
    remaining = cfg.max_daily_drawdown_eur + min(budget.daily_realized_drawdown_eur, 0.0)
    if stressed_loss > remaining:
        raise RiskLimitExceeded(
            "stress_test",
            f"Stress loss {stressed_loss:.2f} EUR exceeds remaining drawdown budget {remaining:.2f} EUR",
        )
