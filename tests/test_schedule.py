"""
Unit tests for ingest/schedule.py -- due-work selection and liquidity filters.
"""

from client.gateway import TickerFunding
from config import Config
from ingest.circuit import CircuitBoard
from ingest.schedule import (
    ExchangeSymbolSchedule,
    LiquidityFilters,
    bid_ask_spread_bps,
    build_missing_schedules,
    get_due_schedules,
    group_schedules_by_exchange,
    make_schedule,
    poll_interval_ms,
)


def _make_schedule(
    exchange: str = "binance",
    symbol: str = "BTC",
    tier: int = 1,
    interval_ms: int = 60_000,
    last_polled_at: float | None = None,
    active: bool = True,
) -> ExchangeSymbolSchedule:
    return ExchangeSymbolSchedule(
        exchange=exchange, symbol=symbol, tier=tier, poll_interval_ms=interval_ms,
        last_polled_at=last_polled_at, active=active,
    )


def _open_board(exchange: str) -> CircuitBoard:
    board = CircuitBoard(failure_threshold=1)
    board.record_failure(exchange, 0.0)
    return board


class TestSchedule:
    def test_never_polled_is_due(self):
        assert _make_schedule().is_due(0.0)

    def test_due_after_interval(self):
        s = _make_schedule(last_polled_at=100.0)
        assert not s.is_due(159.9)
        assert s.is_due(160.0)

    def test_inactive_never_due(self):
        assert not _make_schedule(active=False).is_due(1e12)

    def test_failure_deactivates_at_limit(self):
        s = _make_schedule()
        assert not s.record_failure(1.0, deactivate_after=2)
        assert s.record_failure(2.0, deactivate_after=2)
        assert not s.active
        assert s.last_polled_at == 2.0
        assert not s.record_failure(3.0, deactivate_after=2)

    def test_success_resets(self):
        s = _make_schedule()
        s.record_failure(1.0, deactivate_after=10)
        s.record_success(2.0)
        assert s.consecutive_failures == 0
        assert s.last_success_at == 2.0

    def test_row_round_trip(self):
        s = _make_schedule(last_polled_at=5.0)
        assert ExchangeSymbolSchedule.from_row(s.to_row()) == s


class TestBuilders:
    def test_poll_interval_by_tier(self):
        cfg = Config(_env_file=None)
        assert poll_interval_ms(cfg, 1) == 60_000
        assert poll_interval_ms(cfg, 4) == 600_000
        assert poll_interval_ms(cfg, 9) == 600_000

    def test_make_schedule_uses_symbol_tier(self):
        s = make_schedule(Config(_env_file=None), "okx", "SOL")
        assert s.tier == 2
        assert s.poll_interval_ms == 180_000

    def test_missing_schedules_skip_known_and_excluded(self):
        cfg = Config(_env_file=None, tracked_symbols=["BTC", "ETH", "LUNA"], excluded_symbols=["LUNA"])
        existing = [_make_schedule("binance", "BTC")]
        created = build_missing_schedules(cfg, ["binance", "okx"], existing)
        assert sorted(s.key for s in created) == [("binance", "ETH"), ("okx", "BTC"), ("okx", "ETH")]


class TestGetDueSchedules:
    def test_open_circuit_never_returned(self):
        schedules = [_make_schedule("binance"), _make_schedule("bybit")]
        due = get_due_schedules(schedules, _open_board("bybit"), now=10.0)
        assert [s.exchange for s in due] == ["binance"]

    def test_priority_then_wait(self):
        schedules = [
            _make_schedule("a", "X", tier=2, last_polled_at=0.0),
            _make_schedule("a", "Y", tier=1, last_polled_at=500.0),
            _make_schedule("a", "Z", tier=1, last_polled_at=100.0),
            _make_schedule("a", "W", tier=1, last_polled_at=None),
        ]
        due = get_due_schedules(schedules, CircuitBoard(), now=1000.0)
        assert [s.symbol for s in due] == ["W", "Z", "Y", "X"]

    def test_not_due_excluded(self):
        schedules = [_make_schedule(last_polled_at=990.0)]
        assert get_due_schedules(schedules, CircuitBoard(), now=1000.0) == []

    def test_group_by_exchange(self):
        groups = group_schedules_by_exchange([
            _make_schedule("binance", "BTC"), _make_schedule("binance", "ETH"), _make_schedule("okx", "BTC"),
        ])
        assert groups == {"binance": {"BTC", "ETH"}, "okx": {"BTC"}}


class TestLiquidityFilters:
    def _filters(self, **kwargs) -> LiquidityFilters:
        defaults = dict(min_open_interest_usd=0.0, min_volume_24h_usd=1_000_000.0, max_bid_ask_spread_bps=50.0)
        defaults.update(kwargs)
        return LiquidityFilters(**defaults)

    def _row(self, **kwargs) -> TickerFunding:
        defaults = dict(symbol="BTC", mark_price=100.0, funding_rate=0.0001, volume_24h=5_000_000.0)
        defaults.update(kwargs)
        return TickerFunding(**defaults)

    def test_passes(self):
        assert self._filters().passes(self._row(bid_price=99.99, ask_price=100.01))

    def test_low_volume_fails(self):
        assert not self._filters().passes(self._row(volume_24h=10.0))

    def test_unknown_open_interest_only_fails_with_minimum(self):
        assert self._filters().passes(self._row(open_interest=0.0))
        assert not self._filters(min_open_interest_usd=1.0).passes(self._row(open_interest=0.0))

    def test_wide_spread_fails(self):
        assert not self._filters().passes(self._row(bid_price=99.0, ask_price=101.0))

    def test_unknown_book_ignored(self):
        assert bid_ask_spread_bps(self._row()) is None
        assert self._filters().passes(self._row())
