"""
Configuration loaded from environment variables. Fail-fast on missing required values.

The exchange allocation table and per-tier thresholds are nested models; set
them from the environment as JSON, e.g.
EXCHANGES='[{"name": "binance", "role": "long", "taker_fee_bps": 4}]'.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class ConfigError(Exception):
    """Raised when configuration is missing or unusable. Fatal for the cycle."""
    pass


class ExchangeConfig(BaseModel):
    """One row of the exchange allocation table."""
    model_config = {"frozen": True}

    name: str
    role: Literal["long", "short", "both"] = "both"
    funding_interval_hours: float = Field(default=8.0, gt=0)
    taker_fee_bps: float = Field(default=5.0, ge=0)
    maker_fee_bps: float = Field(default=2.0, ge=0)
    allocation_eur: float = Field(default=0.0, ge=0)
    # ccxt exchange id, defaults to name
    ccxt_id: str = ""
    api_key: str = ""
    api_secret: str = ""
    api_password: str = ""


class TierThresholds(BaseModel):
    """Entry thresholds and bucket size for one risk tier."""
    model_config = {"frozen": True}

    min_profit_bps: float = Field(ge=0)
    max_spread_bps: float = Field(gt=0)
    max_positions: int = Field(ge=0)


DEFAULT_EXCHANGES: list[ExchangeConfig] = [
    ExchangeConfig(name="hyperliquid", role="short", funding_interval_hours=1, taker_fee_bps=3.5, maker_fee_bps=0.2),
    ExchangeConfig(name="binance", role="long", funding_interval_hours=8, taker_fee_bps=4.0, maker_fee_bps=2.0),
    ExchangeConfig(name="bybit", role="both", funding_interval_hours=8, taker_fee_bps=5.5, maker_fee_bps=2.0),
    ExchangeConfig(name="okx", role="both", funding_interval_hours=8, taker_fee_bps=5.0, maker_fee_bps=2.0),
]

# Funding intervals for exchanges without a table row
DEFAULT_FUNDING_INTERVAL_HOURS: dict[str, float] = {
    "binance": 8.0,
    "bybit": 8.0,
    "okx": 8.0,
    "deribit": 8.0,
    "kucoin": 8.0,
    "gate": 8.0,
    "bitget": 8.0,
    "mexc": 8.0,
    "hyperliquid": 1.0,
}

BLUE_CHIP_SYMBOLS = ["BTC", "ETH", "BNB", "SOL", "XRP", "DOGE", "ADA", "AVAX", "DOT", "LINK"]
MEME_SYMBOLS = ["PEPE", "WIF", "BONK", "FLOKI", "MEME", "TURBO", "NEIRO", "PNUT", "ACT"]


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Exchange allocation table
    exchanges: list[ExchangeConfig] = Field(default_factory=lambda: list(DEFAULT_EXCHANGES))
    # Combined taker fee assumed when either leg's exchange is not in the table
    default_fee_bps: float = Field(default=16.0, ge=0)

    # Symbols and tiers
    tracked_symbols: list[str] = Field(default_factory=lambda: list(BLUE_CHIP_SYMBOLS))
    # Poll tier per symbol (1 = highest priority); unmapped symbols use discovery_tier
    symbol_tiers: dict[str, int] = Field(default_factory=lambda: {
        "BTC": 1, "ETH": 1, "SOL": 2, "BNB": 2, "XRP": 2,
        "DOGE": 3, "ADA": 3, "AVAX": 3, "DOT": 3, "LINK": 3,
    })
    tier_interval_sec: dict[int, float] = Field(default_factory=lambda: {1: 60.0, 2: 180.0, 3: 300.0, 4: 600.0})
    auto_discover_symbols: bool = False
    discovery_tier: int = Field(default=4, ge=1)
    excluded_symbols: list[str] = Field(default_factory=list)

    # Circuit breaker (per exchange)
    circuit_failure_threshold: int = Field(default=3, gt=0)
    circuit_cooldown_sec: float = Field(default=60.0, gt=0)
    circuit_max_cooldown_sec: float = Field(default=1800.0, gt=0)
    schedule_deactivate_after_failures: int = Field(default=10, gt=0)

    # Fetching
    fetch_timeout_sec: float = Field(default=10.0, gt=0)
    fetch_workers: int = Field(default=8, ge=1, le=32)

    # Liquidity filters: snapshots below these are recorded but not scored
    min_open_interest_usd: float = Field(default=0.0, ge=0)
    min_volume_24h_usd: float = Field(default=1_000_000.0, ge=0)
    max_bid_ask_spread_bps: float = Field(default=50.0, gt=0)

    # Freshness
    snapshot_max_age_sec: float = Field(default=300.0, gt=0)
    signal_max_age_sec: float = Field(default=120.0, gt=0)
    health_stale_after_sec: float = Field(default=600.0, gt=0)
    # Superseded snapshots older than this are pruned after each ingestion pass
    snapshot_retention_sec: float = Field(default=7 * 86400.0, gt=0)

    # Scoring
    slippage_estimate_bps: float = Field(default=2.0, ge=0)
    tier_thresholds: dict[str, TierThresholds] = Field(default_factory=lambda: {
        "safe": TierThresholds(min_profit_bps=5.0, max_spread_bps=25.0, max_positions=6),
        "medium": TierThresholds(min_profit_bps=10.0, max_spread_bps=35.0, max_positions=2),
        "high": TierThresholds(min_profit_bps=15.0, max_spread_bps=50.0, max_positions=0),
    })
    score_weight_edge: float = Field(default=0.5, ge=0)
    score_weight_liquidity: float = Field(default=0.3, ge=0)
    score_weight_risk: float = Field(default=0.2, ge=0)
    # Net edge (bps) at which the edge component reaches ~63% of its range
    score_edge_scale_bps: float = Field(default=50.0, gt=0)
    blue_chip_symbols: list[str] = Field(default_factory=lambda: list(BLUE_CHIP_SYMBOLS))
    meme_symbols: list[str] = Field(default_factory=lambda: list(MEME_SYMBOLS))
    volatility_multipliers: dict[str, float] = Field(default_factory=dict)

    # Modes
    mode: Literal["off", "paper", "live"] = "paper"
    log_level: str = "INFO"

    # Capital and risk
    hedge_size_eur: float = Field(default=50.0, gt=0)
    max_deployed_eur: float = Field(default=400.0, gt=0)
    max_concurrent_hedges: int = Field(default=8, ge=0)
    max_daily_drawdown_eur: float = Field(default=50.0, gt=0)
    caution_drawdown_eur: float = Field(default=25.0, gt=0)
    stress_test_multiplier: float = Field(default=2.0, ge=0)
    kill_switch_cooldown_hours: float = Field(default=24.0, gt=0)
    eur_usd_rate: float = Field(default=1.08, gt=0)

    # Execution
    order_timeout_sec: float = Field(default=10.0, gt=0)
    paper_slippage_bps: float = Field(default=2.0, ge=0)

    # Exit policy
    max_holding_hours: float = Field(default=24.0, gt=0)
    min_holding_intervals: int = Field(default=1, ge=0)
    profit_target_pct: float = Field(default=60.0, gt=0)
    spread_collapse_bps: float = Field(default=5.0)
    stop_loss_pct: float = Field(default=0.5, gt=0)

    # Storage and API
    db_path: str = "pipeline.db"
    audit_buffer_size: int = Field(default=200, ge=1)
    admin_token: str = ""
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1, le=65535)


def get_exchange_config(cfg: Config, exchange: str) -> ExchangeConfig | None:
    for ex in cfg.exchanges:
        if ex.name == exchange:
            return ex
    return None


def is_valid_hedge_pair(cfg: Config, long_exchange: str, short_exchange: str) -> bool:
    """Both legs configured, distinct, and each allowed on its side."""
    long_cfg = get_exchange_config(cfg, long_exchange)
    short_cfg = get_exchange_config(cfg, short_exchange)
    if long_cfg is None or short_cfg is None:
        return False
    if long_cfg.name == short_cfg.name:
        return False
    return long_cfg.role in ("long", "both") and short_cfg.role in ("short", "both")


def effective_fee_bps(cfg: Config, long_exchange: str, short_exchange: str) -> float:
    """Combined taker fee of both legs. Conservative default when either is unconfigured."""
    long_cfg = get_exchange_config(cfg, long_exchange)
    short_cfg = get_exchange_config(cfg, short_exchange)
    if long_cfg is None or short_cfg is None:
        return cfg.default_fee_bps
    return long_cfg.taker_fee_bps + short_cfg.taker_fee_bps


def funding_interval_hours(cfg: Config, exchange: str) -> float:
    ex = get_exchange_config(cfg, exchange)
    if ex is not None:
        return ex.funding_interval_hours
    return DEFAULT_FUNDING_INTERVAL_HOURS.get(exchange, 8.0)


def symbol_tier(cfg: Config, symbol: str) -> int:
    return cfg.symbol_tiers.get(symbol, cfg.discovery_tier)


def load_config() -> Config:
    """Load and validate config from environment. Raises ConfigError if no exchange is configured."""
    cfg = Config()
    if not cfg.exchanges:
        raise ConfigError("No exchanges configured")
    return cfg
