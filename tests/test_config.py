"""
Unit tests for config.py.
"""

import pytest
from pydantic import ValidationError

from config import (
    Config,
    ConfigError,
    ExchangeConfig,
    effective_fee_bps,
    funding_interval_hours,
    get_exchange_config,
    is_valid_hedge_pair,
    load_config,
    symbol_tier,
)


class TestConfig:
    def test_defaults(self):
        cfg = Config(_env_file=None)
        assert cfg.mode == "paper"
        assert cfg.hedge_size_eur == 50.0
        assert cfg.max_deployed_eur == 400.0
        assert cfg.max_concurrent_hedges == 8
        assert cfg.max_daily_drawdown_eur == 50.0
        assert cfg.default_fee_bps == 16.0
        assert cfg.tier_interval_sec[1] == 60.0
        assert cfg.tier_thresholds["safe"].min_profit_bps == 5.0
        assert cfg.tier_thresholds["high"].max_positions == 0

    def test_default_allocation_table(self):
        cfg = Config(_env_file=None)
        names = [ex.name for ex in cfg.exchanges]
        assert names == ["hyperliquid", "binance", "bybit", "okx"]
        assert get_exchange_config(cfg, "hyperliquid").funding_interval_hours == 1

    def test_config_is_frozen(self):
        cfg = Config(_env_file=None)
        with pytest.raises(ValidationError):
            cfg.mode = "live"

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, mode="yolo")

    def test_negative_hedge_size_rejected(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, hedge_size_eur=-1)

    def test_exchanges_from_env_json(self, monkeypatch):
        monkeypatch.setenv("EXCHANGES", '[{"name": "bybit", "role": "long", "taker_fee_bps": 4}]')
        cfg = Config(_env_file=None)
        assert len(cfg.exchanges) == 1
        assert cfg.exchanges[0].role == "long"
        assert cfg.exchanges[0].funding_interval_hours == 8.0


class TestLoadConfig:
    def test_no_exchanges_is_fatal(self, monkeypatch):
        monkeypatch.setenv("EXCHANGES", "[]")
        with pytest.raises(ConfigError, match="No exchanges"):
            load_config()

    def test_loads_defaults(self, monkeypatch):
        monkeypatch.delenv("EXCHANGES", raising=False)
        monkeypatch.chdir("/")
        cfg = load_config()
        assert cfg.exchanges


class TestHedgePairs:
    def _cfg(self) -> Config:
        return Config(_env_file=None, exchanges=[
            ExchangeConfig(name="a", role="long", taker_fee_bps=4.0),
            ExchangeConfig(name="b", role="short", taker_fee_bps=5.5),
            ExchangeConfig(name="c", role="both", taker_fee_bps=5.0),
        ])

    def test_roles_respected(self):
        cfg = self._cfg()
        assert is_valid_hedge_pair(cfg, "a", "b")
        assert is_valid_hedge_pair(cfg, "c", "b")
        assert is_valid_hedge_pair(cfg, "a", "c")
        assert not is_valid_hedge_pair(cfg, "b", "a")
        assert not is_valid_hedge_pair(cfg, "c", "a")

    def test_same_exchange_invalid(self):
        assert not is_valid_hedge_pair(self._cfg(), "c", "c")

    def test_unconfigured_exchange_invalid(self):
        assert not is_valid_hedge_pair(self._cfg(), "a", "kucoin")

    def test_effective_fee_sums_taker_fees(self):
        assert effective_fee_bps(self._cfg(), "a", "b") == pytest.approx(9.5)

    def test_effective_fee_default_when_unconfigured(self):
        assert effective_fee_bps(self._cfg(), "a", "kucoin") == 16.0


class TestLookups:
    def test_funding_interval_from_table(self):
        cfg = Config(_env_file=None)
        assert funding_interval_hours(cfg, "hyperliquid") == 1
        assert funding_interval_hours(cfg, "binance") == 8

    def test_funding_interval_known_default(self):
        cfg = Config(_env_file=None, exchanges=[ExchangeConfig(name="binance", role="long")])
        assert funding_interval_hours(cfg, "hyperliquid") == 1.0
        assert funding_interval_hours(cfg, "kucoin") == 8.0
        assert funding_interval_hours(cfg, "nowhere") == 8.0

    def test_symbol_tier(self):
        cfg = Config(_env_file=None)
        assert symbol_tier(cfg, "BTC") == 1
        assert symbol_tier(cfg, "SOL") == 2
        assert symbol_tier(cfg, "NEWCOIN") == cfg.discovery_tier
