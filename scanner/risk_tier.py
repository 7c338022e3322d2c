"""
Deterministic risk-tier classification. Depends only on the symbol, the pair's
liquidity score and static configuration, never on live prices.
"""

from __future__ import annotations

from config import Config
from scanner.models import RiskTier

HIGH_VOLATILITY_MULTIPLIER = 2.0
MIN_LIQUIDITY_SCORE = 40.0


def classify_risk_tier(symbol: str, liquidity_score: float, cfg: Config) -> RiskTier:
    """
    meme list -> HIGH; blue-chip allowlist -> SAFE; otherwise HIGH for a
    volatility multiplier above 2x or a liquidity score under 40, else MEDIUM.
    """
    if symbol in cfg.meme_symbols:
        return RiskTier.HIGH
    if symbol in cfg.blue_chip_symbols:
        return RiskTier.SAFE
    volatility = cfg.volatility_multipliers.get(symbol, 1.0)
    if volatility > HIGH_VOLATILITY_MULTIPLIER:
        return RiskTier.HIGH
    if liquidity_score < MIN_LIQUIDITY_SCORE:
        return RiskTier.HIGH
    return RiskTier.MEDIUM
