"""
Funding-rate normalization to a common 8-hour basis.

Exchanges settle funding every 1h, 4h or 8h. Comparing raw rates across them
overstates the 8h venue's carry by up to 8x, so every rate is rescaled before
pairing.
"""

from __future__ import annotations

from scanner.models import MarketSnapshot, NormalizedFunding

CANONICAL_INTERVAL_HOURS = 8.0
PERIODS_PER_YEAR_8H = 1095  # 3 per day * 365


def normalize(raw_rate: float, interval_hours: float) -> float:
    """Rescale a per-interval rate to its 8h equivalent. Non-positive intervals yield 0."""
    if interval_hours <= 0:
        return 0.0
    return raw_rate * (CANONICAL_INTERVAL_HOURS / interval_hours)


def denormalize(rate_8h: float, interval_hours: float) -> float:
    """Inverse of normalize()."""
    return rate_8h * (interval_hours / CANONICAL_INTERVAL_HOURS)


def annualize_8h(rate_8h: float) -> float:
    return rate_8h * PERIODS_PER_YEAR_8H


def normalize_snapshot(snapshot: MarketSnapshot) -> NormalizedFunding:
    return NormalizedFunding(
        exchange=snapshot.exchange,
        symbol=snapshot.symbol,
        raw_rate=snapshot.funding_rate,
        interval_hours=snapshot.funding_interval_hours,
        rate_8h=normalize(snapshot.funding_rate, snapshot.funding_interval_hours),
    )
