"""
Opportunity scoring. A weighted composite of net edge, liquidity and risk tier.

Exact weights are policy, not structure: anything satisfying ScorePolicy can
replace the default, and the default's weights come from config. The only
fixed contract is the direction of each factor:
- more net edge scores higher
- more liquidity scores higher
- a riskier tier scores lower
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from config import Config
from scanner.models import MarketSnapshot, RiskTier

logger = logging.getLogger(__name__)

# Risk component per tier (0-100)
RISK_TIER_SCORES: dict[RiskTier, float] = {
    RiskTier.SAFE: 100.0,
    RiskTier.MEDIUM: 60.0,
    RiskTier.HIGH: 20.0,
}

# 24h volume (USD) mapped log-linearly onto 0-100
_VOLUME_FLOOR_LOG10 = 5.0  # $100k -> 0
_VOLUME_CEIL_LOG10 = 9.0  # $1B -> 100


@runtime_checkable
class ScorePolicy(Protocol):
    def score(self, net_edge_bps: float, liquidity_score: float, risk_tier: RiskTier) -> float:
        ...


@dataclass(frozen=True)
class WeightedScorePolicy:
    """
    score = weighted mean of
      edge:      100 * (1 - exp(-net_edge / edge_scale)), strictly increasing, saturating
      liquidity: the 0-100 liquidity score
      risk:      RISK_TIER_SCORES[tier]
    """
    edge_weight: float = 0.5
    liquidity_weight: float = 0.3
    risk_weight: float = 0.2
    edge_scale_bps: float = 50.0

    def __post_init__(self) -> None:
        if self.edge_weight + self.liquidity_weight + self.risk_weight <= 0:
            raise ValueError("Score weights must not all be zero")
        if self.edge_scale_bps <= 0:
            raise ValueError(f"edge_scale_bps must be positive, got {self.edge_scale_bps}")

    def score(self, net_edge_bps: float, liquidity_score: float, risk_tier: RiskTier) -> float:
        edge_component = 100.0 * (1.0 - math.exp(-max(net_edge_bps, 0.0) / self.edge_scale_bps))
        liquidity_component = min(max(liquidity_score, 0.0), 100.0)
        risk_component = RISK_TIER_SCORES[risk_tier]
        total_weight = self.edge_weight + self.liquidity_weight + self.risk_weight
        return (
            self.edge_weight * edge_component
            + self.liquidity_weight * liquidity_component
            + self.risk_weight * risk_component
        ) / total_weight


def policy_from_config(cfg: Config) -> WeightedScorePolicy:
    return WeightedScorePolicy(
        edge_weight=cfg.score_weight_edge,
        liquidity_weight=cfg.score_weight_liquidity,
        risk_weight=cfg.score_weight_risk,
        edge_scale_bps=cfg.score_edge_scale_bps,
    )


def snapshot_liquidity_score(snapshot: MarketSnapshot) -> float:
    """
    0-100. Volume component always; when top of book is known, averaged with
    a spread component of 100 - spread_bps.
    """
    if snapshot.volume_24h > 0:
        log_vol = math.log10(snapshot.volume_24h)
        volume_score = (log_vol - _VOLUME_FLOOR_LOG10) / (_VOLUME_CEIL_LOG10 - _VOLUME_FLOOR_LOG10) * 100.0
        volume_score = min(max(volume_score, 0.0), 100.0)
    else:
        volume_score = 0.0

    bid, ask = snapshot.bid_price, snapshot.ask_price
    if bid > 0 and ask >= bid:
        spread_bps = (ask - bid) / ((ask + bid) / 2) * 10_000
        spread_score = 100.0 - min(spread_bps, 100.0)
        return (volume_score + spread_score) / 2
    return volume_score


def pair_liquidity_score(long_snapshot: MarketSnapshot, short_snapshot: MarketSnapshot) -> float:
    """A hedge is only as liquid as its thinner leg."""
    return min(snapshot_liquidity_score(long_snapshot), snapshot_liquidity_score(short_snapshot))
