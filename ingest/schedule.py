"""
Exchange/symbol poll schedules, due-work selection and liquidity pre-filtering.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass

from client.gateway import TickerFunding
from config import Config, symbol_tier
from ingest.circuit import CircuitBoard, CircuitState

logger = logging.getLogger(__name__)


@dataclass
class ExchangeSymbolSchedule:
    """Poll bookkeeping for one (exchange, symbol). Deactivated, never deleted."""
    exchange: str
    symbol: str
    tier: int
    poll_interval_ms: int
    last_polled_at: float | None = None
    last_success_at: float | None = None
    consecutive_failures: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    active: bool = True

    @property
    def key(self) -> tuple[str, str]:
        return (self.exchange, self.symbol)

    def is_due(self, now: float) -> bool:
        if not self.active:
            return False
        if self.last_polled_at is None:
            return True
        return self.last_polled_at + self.poll_interval_ms / 1000.0 <= now

    def record_success(self, polled_at: float) -> None:
        self.last_polled_at = polled_at
        self.last_success_at = polled_at
        self.consecutive_failures = 0

    def record_failure(self, polled_at: float, deactivate_after: int) -> bool:
        """Returns True if this failure deactivated the schedule."""
        self.last_polled_at = polled_at
        self.consecutive_failures += 1
        if self.active and self.consecutive_failures >= deactivate_after:
            self.active = False
            logger.warning(
                "Schedule %s/%s deactivated after %d consecutive failures",
                self.exchange, self.symbol, self.consecutive_failures,
            )
            return True
        return False

    def to_row(self) -> dict:
        return {
            "exchange": self.exchange,
            "symbol": self.symbol,
            "tier": self.tier,
            "poll_interval_ms": self.poll_interval_ms,
            "last_polled_at": self.last_polled_at,
            "last_success_at": self.last_success_at,
            "consecutive_failures": self.consecutive_failures,
            "circuit_state": self.circuit_state.value,
            "active": int(self.active),
        }

    @classmethod
    def from_row(cls, row: dict) -> ExchangeSymbolSchedule:
        return cls(
            exchange=row["exchange"],
            symbol=row["symbol"],
            tier=int(row["tier"]),
            poll_interval_ms=int(row["poll_interval_ms"]),
            last_polled_at=row.get("last_polled_at"),
            last_success_at=row.get("last_success_at"),
            consecutive_failures=int(row.get("consecutive_failures") or 0),
            circuit_state=CircuitState(row.get("circuit_state") or "closed"),
            active=bool(row.get("active", 1)),
        )


def poll_interval_ms(cfg: Config, tier: int) -> int:
    intervals = cfg.tier_interval_sec
    if tier in intervals:
        return int(intervals[tier] * 1000)
    # Unknown tier polls at the slowest configured rate
    return int(max(intervals.values()) * 1000)


def make_schedule(cfg: Config, exchange: str, symbol: str, tier: int | None = None) -> ExchangeSymbolSchedule:
    tier = tier if tier is not None else symbol_tier(cfg, symbol)
    return ExchangeSymbolSchedule(
        exchange=exchange,
        symbol=symbol,
        tier=tier,
        poll_interval_ms=poll_interval_ms(cfg, tier),
    )


def build_missing_schedules(
    cfg: Config,
    exchanges: list[str],
    existing: list[ExchangeSymbolSchedule],
) -> list[ExchangeSymbolSchedule]:
    """Schedules for tracked symbols on polled exchanges that do not exist yet."""
    known = {s.key for s in existing}
    excluded = set(cfg.excluded_symbols)
    created = []
    for exchange in exchanges:
        for symbol in cfg.tracked_symbols:
            if symbol in excluded or (exchange, symbol) in known:
                continue
            created.append(make_schedule(cfg, exchange, symbol))
    return created


def get_due_schedules(
    schedules: list[ExchangeSymbolSchedule],
    circuits: CircuitBoard,
    now: float,
) -> list[ExchangeSymbolSchedule]:
    """
    Active schedules whose poll interval has elapsed, excluding exchanges whose
    circuit does not allow a call. Highest-priority tier (lowest number) first,
    then longest since last poll; never-polled schedules sort first within a tier.
    """
    due = [
        s for s in schedules
        if s.is_due(now) and circuits.allows(s.exchange, now)
    ]

    def _sort_key(s: ExchangeSymbolSchedule) -> tuple:
        waited = float("inf") if s.last_polled_at is None else now - s.last_polled_at
        return (s.tier, -waited, s.exchange, s.symbol)

    return sorted(due, key=_sort_key)


def group_schedules_by_exchange(schedules: list[ExchangeSymbolSchedule]) -> dict[str, set[str]]:
    """One entry per exchange, so each exchange gets exactly one batched call."""
    groups: dict[str, set[str]] = defaultdict(set)
    for s in schedules:
        groups[s.exchange].add(s.symbol)
    return dict(groups)


@dataclass(frozen=True)
class LiquidityFilters:
    min_open_interest_usd: float
    min_volume_24h_usd: float
    max_bid_ask_spread_bps: float

    def passes(self, row: TickerFunding) -> bool:
        """Unknown open interest (0) only fails when a minimum is set."""
        if row.open_interest < self.min_open_interest_usd:
            return False
        if row.volume_24h < self.min_volume_24h_usd:
            return False
        spread = bid_ask_spread_bps(row)
        if spread is not None and spread > self.max_bid_ask_spread_bps:
            return False
        return True


def bid_ask_spread_bps(row: TickerFunding) -> float | None:
    if row.bid_price <= 0 or row.ask_price <= 0 or row.ask_price < row.bid_price:
        return None
    mid = (row.bid_price + row.ask_price) / 2
    return (row.ask_price - row.bid_price) / mid * 10_000


def get_liquidity_filters(cfg: Config) -> LiquidityFilters:
    return LiquidityFilters(
        min_open_interest_usd=cfg.min_open_interest_usd,
        min_volume_24h_usd=cfg.min_volume_24h_usd,
        max_bid_ask_spread_bps=cfg.max_bid_ask_spread_bps,
    )
