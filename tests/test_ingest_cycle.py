"""
Integration tests for ingest/cycle.py -- one ingestion pass against a real store.
"""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from client.gateway import ExchangeGateway, GatewayError, TickerFunding
from config import Config, ExchangeConfig
from ingest.circuit import CircuitState
from ingest.cycle import CIRCUIT_STATE_KEY, INGEST_LEASE, fetch_batches, load_circuit_board, run_ingestion
from monitor.audit import AuditLog
from scanner.engine import run_scoring
from state.checkpoint import CheckpointManager
from state.store import PipelineStore


class _Clock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class _FakeMarket:
    def __init__(self, name: str, rows: list[TickerFunding] | None = None, exc: Exception | None = None):
        self.exchange_name = name
        self.rows = rows or []
        self.exc = exc
        self.calls = 0

    def fetch_batch(self) -> list[TickerFunding]:
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return list(self.rows)


def _row(symbol: str, rate: float, mark: float = 100.0) -> TickerFunding:
    return TickerFunding(symbol=symbol, mark_price=mark, funding_rate=rate, volume_24h=5e9)


def _make_cfg(**kwargs) -> Config:
    defaults = dict(
        _env_file=None,
        exchanges=[
            ExchangeConfig(name="binance", role="long", taker_fee_bps=4.0),
            ExchangeConfig(name="bybit", role="both", taker_fee_bps=5.5),
            ExchangeConfig(name="okx", role="both", taker_fee_bps=5.0),
        ],
        tracked_symbols=["BTC", "ETH"],
        min_volume_24h_usd=0.0,
        circuit_failure_threshold=2,
        slippage_estimate_bps=0.0,
    )
    defaults.update(kwargs)
    return Config(**defaults)


@pytest.fixture
def env(tmp_path: Path):
    store = PipelineStore(tmp_path / "p.db")
    checkpoint = CheckpointManager(tmp_path / "p.db")
    audit = AuditLog(store)
    yield store, checkpoint, audit
    checkpoint.close()
    store.close()


def _markets(**failures) -> dict[str, _FakeMarket]:
    markets = {
        "binance": _FakeMarket("binance", [_row("BTC", 0.0), _row("ETH", 0.0)]),
        "bybit": _FakeMarket("bybit", [_row("BTC", 0.003), _row("ETH", 0.0001)]),
        "okx": _FakeMarket("okx", [_row("BTC", 0.004), _row("ETH", 0.0001)]),
    }
    for name, exc in failures.items():
        markets[name].exc = exc
    return markets


class TestRunIngestion:
    def test_writes_snapshots_and_schedules(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        result = run_ingestion(cfg, store, ExchangeGateway(_markets()), checkpoint, audit, clock=clock)

        assert result.due_schedules == 6
        assert result.exchanges_polled == ["binance", "bybit", "okx"]
        assert result.snapshots_written == 6
        assert store.count_snapshots() == 6
        schedules = store.get_schedules()
        assert len(schedules) == 6
        assert all(s["last_success_at"] == clock.t for s in schedules)
        assert store.get_latest_cycle("ingest")["stats"]["snapshots_written"] == 6

    def test_not_due_schedules_not_polled(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        markets = _markets()
        gateway = ExchangeGateway(markets)
        run_ingestion(cfg, store, gateway, checkpoint, audit, clock=clock)
        clock.t += 10
        result = run_ingestion(cfg, store, gateway, checkpoint, audit, clock=clock)
        assert result.due_schedules == 0
        assert markets["binance"].calls == 1

    def test_one_batch_call_per_exchange(self, env):
        store, checkpoint, audit = env
        markets = _markets()
        run_ingestion(_make_cfg(), store, ExchangeGateway(markets), checkpoint, audit, clock=_Clock())
        assert [m.calls for m in markets.values()] == [1, 1, 1]

    def test_failure_isolated_to_exchange(self, env):
        store, checkpoint, audit = env
        markets = _markets(bybit=RuntimeError("boom"))
        result = run_ingestion(_make_cfg(), store, ExchangeGateway(markets), checkpoint, audit, clock=_Clock())

        assert "bybit" in result.exchanges_failed
        assert store.count_snapshots("bybit") == 0
        assert store.count_snapshots("binance") == 2
        failed = store.get_audit_entries(50, level="warn")
        assert any(e["action"] == "FETCH_FAILED" and e["entity_id"] == "bybit" for e in failed)
        bybit = [s for s in store.get_schedules() if s["exchange"] == "bybit"]
        assert all(s["consecutive_failures"] == 1 and s["last_success_at"] is None for s in bybit)

    def test_repeated_failures_open_circuit(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        gateway = ExchangeGateway(_markets(okx=GatewayError("okx", "503")))
        run_ingestion(cfg, store, gateway, checkpoint, audit, clock=clock)
        clock.t += 61
        run_ingestion(cfg, store, gateway, checkpoint, audit, clock=clock)

        board = load_circuit_board(checkpoint, cfg)
        assert board.state("okx") == CircuitState.OPEN
        opened = [e for e in store.get_audit_entries(100) if e["action"] == "CIRCUIT_OPEN"]
        assert len(opened) == 1
        assert opened[0]["level"] == "warn"
        okx_rows = [s for s in store.get_schedules() if s["exchange"] == "okx"]
        assert all(s["circuit_state"] == "open" for s in okx_rows)

    def test_symbol_missing_from_batch_counts_as_failure(self, env):
        store, checkpoint, audit = env
        markets = _markets()
        markets["okx"].rows = [_row("BTC", 0.001)]
        run_ingestion(_make_cfg(), store, ExchangeGateway(markets), checkpoint, audit, clock=_Clock())
        okx_eth = [s for s in store.get_schedules() if s["exchange"] == "okx" and s["symbol"] == "ETH"][0]
        assert okx_eth["consecutive_failures"] == 1

    def test_discovery_adds_schedules(self, env):
        store, checkpoint, audit = env
        markets = _markets()
        markets["binance"].rows.append(_row("NEWCOIN", 0.0001))
        cfg = _make_cfg(auto_discover_symbols=True)
        result = run_ingestion(cfg, store, ExchangeGateway(markets), checkpoint, audit, clock=_Clock())
        assert result.schedules_discovered == 1
        discovered = [s for s in store.get_schedules() if s["symbol"] == "NEWCOIN"]
        assert discovered[0]["tier"] == cfg.discovery_tier


class TestOpenCircuitScenario:
    def test_open_exchange_not_fetched_and_excluded_from_signals(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        board = load_circuit_board(checkpoint, cfg)
        for _ in range(cfg.circuit_failure_threshold):
            board.record_failure("okx", clock.t - 1)
        checkpoint.save(CIRCUIT_STATE_KEY, board)

        markets = _markets()
        result = run_ingestion(cfg, store, ExchangeGateway(markets), checkpoint, audit, clock=clock)

        assert result.exchanges_skipped == ["okx"]
        assert markets["okx"].calls == 0
        assert store.count_snapshots("okx") == 0

        scoring = run_scoring(cfg, store, checkpoint, clock=clock)
        assert scoring.excluded_exchanges == ["okx"]
        assert scoring.signals
        for signal in scoring.signals:
            assert "okx" not in (signal.opportunity.long_exchange, signal.opportunity.short_exchange)


class TestFetchBatches:
    def test_slow_exchange_times_out_without_blocking_siblings(self):
        release = threading.Event()

        class _Slow(_FakeMarket):
            def fetch_batch(self):
                release.wait(5)
                return [_row("BTC", 0.0)]

        gateway = ExchangeGateway({"fast": _FakeMarket("fast", [_row("BTC", 0.0)]), "slow": _Slow("slow")})
        start = time.monotonic()
        results = fetch_batches(gateway, ["fast", "slow"], timeout_sec=0.2, max_workers=2)
        release.set()

        assert time.monotonic() - start < 2
        assert isinstance(results["fast"], list)
        assert isinstance(results["slow"], GatewayError)


class TestIngestLease:
    def _half_open_bybit(self, cfg: Config, checkpoint: CheckpointManager, clock: _Clock) -> None:
        board = load_circuit_board(checkpoint, cfg)
        for _ in range(cfg.circuit_failure_threshold):
            board.record_failure("bybit", clock.t - cfg.circuit_cooldown_sec - 1)
        checkpoint.save(CIRCUIT_STATE_KEY, board)

    def test_pass_skipped_while_lease_held(self, env):
        store, checkpoint, audit = env
        clock = _Clock()
        assert store.acquire_lease(INGEST_LEASE, "other-pass", 300, clock.t)
        markets = _markets()

        result = run_ingestion(_make_cfg(), store, ExchangeGateway(markets), checkpoint, audit, clock=clock)

        assert result.skipped_reason == "lease_held"
        assert [m.calls for m in markets.values()] == [0, 0, 0]
        assert store.get_latest_cycle("ingest") is None
        assert "INGEST_BUSY" in [e["action"] for e in store.get_audit_entries(10, level="warn")]

    def test_lease_released_after_pass(self, env):
        store, checkpoint, audit = env
        clock = _Clock()
        run_ingestion(_make_cfg(), store, ExchangeGateway(_markets()), checkpoint, audit, clock=clock)
        assert store.acquire_lease(INGEST_LEASE, "other-pass", 300, clock.t)

    def test_overlapping_passes_send_one_half_open_trial(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        self._half_open_bybit(cfg, checkpoint, clock)
        lock = threading.Lock()

        class _SlowBybit(_FakeMarket):
            def fetch_batch(self):
                with lock:
                    self.calls += 1
                time.sleep(0.3)
                return list(self.rows)

        markets = _markets()
        markets["bybit"] = _SlowBybit("bybit", markets["bybit"].rows)
        gateway = ExchangeGateway(markets)
        barrier = threading.Barrier(2)
        errors: list[Exception] = []

        def _pass(n: int) -> None:
            try:
                barrier.wait()
                run_ingestion(cfg, store, gateway, checkpoint, audit, clock=clock, owner=f"pass-{n}")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=_pass, args=(n,)) for n in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert markets["bybit"].calls == 1
        assert load_circuit_board(checkpoint, cfg).state("bybit") == CircuitState.CLOSED


class TestScheduleCircuitState:
    def test_skipped_exchange_schedules_mirror_circuit(self, env):
        store, checkpoint, audit = env
        cfg, clock = _make_cfg(), _Clock()
        run_ingestion(cfg, store, ExchangeGateway(_markets()), checkpoint, audit, clock=clock)
        okx = [s for s in store.get_schedules() if s["exchange"] == "okx"]
        assert {s["circuit_state"] for s in okx} == {"closed"}

        board = load_circuit_board(checkpoint, cfg)
        for _ in range(cfg.circuit_failure_threshold):
            board.record_failure("okx", clock.t)
        checkpoint.save(CIRCUIT_STATE_KEY, board)
        clock.t += 1

        result = run_ingestion(cfg, store, ExchangeGateway(_markets()), checkpoint, audit, clock=clock)

        assert result.due_schedules == 0
        okx = [s for s in store.get_schedules() if s["exchange"] == "okx"]
        assert {s["circuit_state"] for s in okx} == {"open"}
        others = [s for s in store.get_schedules() if s["exchange"] != "okx"]
        assert {s["circuit_state"] for s in others} == {"closed"}
