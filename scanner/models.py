"""
Data models for the funding-rate scanner. Pure data, no behavior.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class RiskTier(Enum):
    SAFE = "safe"
    MEDIUM = "medium"
    HIGH = "high"


class ExchangeRole(Enum):
    LONG = "long"
    SHORT = "short"
    BOTH = "both"


@dataclass(frozen=True)
class MarketSnapshot:
    """One exchange's view of one symbol. Superseded by later snapshots, never mutated."""
    exchange: str
    symbol: str
    mark_price: float
    funding_rate: float
    funding_interval_hours: float
    next_funding_time: float | None
    open_interest: float
    volume_24h: float
    observed_at: float
    bid_price: float = 0.0
    ask_price: float = 0.0
    is_liquid: bool = True

    @property
    def key(self) -> tuple[str, str]:
        return (self.exchange, self.symbol)


@dataclass(frozen=True)
class NormalizedFunding:
    """Funding rescaled to an 8h-equivalent basis. Derived on read, never stored."""
    exchange: str
    symbol: str
    raw_rate: float
    interval_hours: float
    rate_8h: float


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """Long one exchange, short another, same symbol. Recomputed every cycle."""
    symbol: str
    long_exchange: str
    short_exchange: str
    long_funding_rate: float  # 8h-normalized
    short_funding_rate: float  # 8h-normalized
    spread_bps: float
    fee_bps: float
    slippage_bps: float
    net_edge_bps: float
    price_spread_bps: float
    liquidity_score: float  # 0-100
    risk_tier: RiskTier
    long_mark_price: float
    short_mark_price: float
    computed_at: float

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.symbol, self.long_exchange, self.short_exchange)

    @property
    def apr_pct(self) -> float:
        # Three 8h periods a day
        return self.net_edge_bps * 1095 / 100


@dataclass(frozen=True)
class TradingSignal:
    """An opportunity that cleared its tier's thresholds, with its rank in one scoring cycle."""
    opportunity: ArbitrageOpportunity
    score: float
    rank: int
    cycle_id: int
