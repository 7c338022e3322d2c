"""
Unit tests for monitor/audit.py -- buffered audit log.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from monitor.audit import AuditLevel, AuditLog, EntityType
from state.store import PipelineStore


class FlakySink:
    """Sink that fails the first *failures* writes."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.batches: list[list[dict]] = []

    def insert_audit_entries(self, rows, *, commit=True):
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("database is locked")
        self.batches.append(list(rows))

    @property
    def actions(self) -> list[str]:
        return [r["action"] for batch in self.batches for r in batch]


class TestBuffering:
    def test_buffered_until_flush(self):
        sink = FlakySink()
        audit = AuditLog(sink, max_buffer=10)
        audit.info("A", EntityType.SYSTEM)
        audit.warn("B", EntityType.EXCHANGE, "okx", reason="timeout")
        assert sink.batches == []
        assert audit.pending == 2

        assert audit.flush() == 2
        assert sink.actions == ["A", "B"]
        assert audit.pending == 0

    def test_flush_empty(self):
        assert AuditLog(FlakySink()).flush() == 0

    def test_error_flushes_immediately(self):
        sink = FlakySink()
        audit = AuditLog(sink, max_buffer=10)
        audit.info("A", EntityType.SYSTEM)
        audit.error("B", EntityType.POSITION, "p1", error="boom")
        assert sink.actions == ["A", "B"]

    def test_full_buffer_flushes(self):
        sink = FlakySink()
        audit = AuditLog(sink, max_buffer=3)
        for i in range(3):
            audit.info(f"E{i}", EntityType.SYSTEM)
        assert sink.actions == ["E0", "E1", "E2"]
        assert audit.pending == 0

    def test_entry_fields(self):
        sink = FlakySink()
        audit = AuditLog(sink, clock=lambda: 42.0)
        entry = audit.action("HEDGE_EXECUTED", EntityType.POSITION, "p1", pnl=1.5)
        assert entry.level == AuditLevel.ACTION
        audit.flush()
        row = sink.batches[0][0]
        assert row["timestamp"] == 42.0
        assert row["level"] == "action"
        assert row["entity_type"] == "position"
        assert row["entity_id"] == "p1"
        assert row["details_json"] == '{"pnl": 1.5}'


class TestFailures:
    def test_failed_batch_rebuffered_in_order(self):
        sink = FlakySink(failures=1)
        audit = AuditLog(sink, max_buffer=10)
        audit.info("A", EntityType.SYSTEM)
        audit.info("B", EntityType.SYSTEM)
        assert audit.flush() == 0
        assert audit.pending == 2

        audit.info("C", EntityType.SYSTEM)
        assert audit.flush() == 3
        assert sink.actions == ["A", "B", "C"]

    def test_degraded_after_repeated_failures(self):
        sink = FlakySink(failures=5)
        audit = AuditLog(sink, degrade_after_failures=2)
        audit.info("A", EntityType.SYSTEM)
        audit.flush()
        assert not audit.degraded
        audit.flush()
        assert audit.degraded

    def test_degraded_mirror_escalates(self, caplog):
        sink = FlakySink(failures=5)
        audit = AuditLog(sink, degrade_after_failures=1)
        audit.info("A", EntityType.SYSTEM)
        audit.flush()

        with caplog.at_level(logging.DEBUG, logger="monitor.audit"):
            audit.info("B", EntityType.SYSTEM)
        escalated = [r for r in caplog.records if r.name == "monitor.audit.fallback" and "B" in r.getMessage()]
        assert escalated
        assert escalated[0].levelno == logging.WARNING

    def test_recovers_after_success(self):
        sink = FlakySink(failures=2)
        audit = AuditLog(sink, degrade_after_failures=2)
        audit.info("A", EntityType.SYSTEM)
        audit.flush()
        audit.flush()
        assert audit.degraded
        assert audit.flush() == 1
        assert not audit.degraded

    def test_overflow_spilled_to_fallback(self, caplog):
        sink = FlakySink(failures=100)
        audit = AuditLog(sink, max_buffer=1)
        with caplog.at_level(logging.CRITICAL, logger="monitor.audit.fallback"):
            for i in range(12):
                audit.info(f"E{i}", EntityType.SYSTEM)
        # Hard cap is 10x the buffer size
        assert audit.pending == 10
        spilled = [r for r in caplog.records if "Unstored audit entry" in r.getMessage()]
        assert len(spilled) == 2


class TestDrain:
    def test_drain_writes_everything(self):
        sink = FlakySink()
        audit = AuditLog(sink)
        audit.info("A", EntityType.SYSTEM)
        assert audit.drain() == 1
        assert audit.pending == 0

    def test_drain_falls_back_to_logger(self, caplog):
        sink = FlakySink(failures=10)
        audit = AuditLog(sink)
        audit.warn("A", EntityType.EXCHANGE, "okx")
        with caplog.at_level(logging.CRITICAL, logger="monitor.audit.fallback"):
            assert audit.drain() == 0
        assert audit.pending == 0
        assert any('"action": "A"' in r.getMessage() for r in caplog.records)


class TestConcurrency:
    def test_parallel_producers(self):
        sink = FlakySink()
        audit = AuditLog(sink, max_buffer=7)

        def _produce(n: int) -> None:
            for i in range(50):
                audit.info(f"T{n}-{i}", EntityType.SYSTEM)

        threads = [threading.Thread(target=_produce, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        audit.flush()

        assert sorted(sink.actions) == sorted(f"T{n}-{i}" for n in range(4) for i in range(50))


class TestWithStore:
    def test_round_trip_through_store(self, tmp_path: Path):
        store = PipelineStore(tmp_path / "audit.db")
        audit = AuditLog(store)
        audit.warn("CIRCUIT_OPENED", EntityType.EXCHANGE, "okx", failures=3)
        audit.flush()

        entries = store.get_audit_entries(entity_id="okx")
        assert entries[0]["action"] == "CIRCUIT_OPENED"
        assert entries[0]["details"] == {"failures": 3}
        store.close()

    def test_sink_mock(self):
        sink = MagicMock()
        audit = AuditLog(sink)
        audit.info("A", EntityType.SYSTEM)
        audit.flush()
        sink.insert_audit_entries.assert_called_once()
