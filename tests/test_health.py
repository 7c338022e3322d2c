"""Tests for monitor.health -- per-stage cycle health."""

from __future__ import annotations

from pathlib import Path

import pytest

from monitor.health import pipeline_health, stage_health
from state.store import PipelineStore


@pytest.fixture
def store(tmp_path: Path) -> PipelineStore:
    s = PipelineStore(tmp_path / "health.db")
    yield s
    s.close()


def _cycle(store: PipelineStore, stage: str, status: str, at: float, error: str = "") -> None:
    cid = store.start_cycle(stage, at)
    store.finish_cycle(cid, status, error=error, finished_at=at + 1)


class TestStageHealth:
    def test_never_run_is_stale(self, store: PipelineStore) -> None:
        health = stage_health(store, "ingest", 600, now=1000.0)
        assert health.stale
        assert health.last_status is None
        assert health.last_success_at is None

    def test_recent_success(self, store: PipelineStore) -> None:
        _cycle(store, "ingest", "ok", 900.0)
        health = stage_health(store, "ingest", 600, now=1000.0)
        assert not health.stale
        assert health.last_success_at == 901.0
        assert health.last_error == ""

    def test_old_success_is_stale(self, store: PipelineStore) -> None:
        _cycle(store, "score", "ok", 100.0)
        assert stage_health(store, "score", 600, now=1000.0).stale

    def test_latest_error_reported(self, store: PipelineStore) -> None:
        _cycle(store, "score", "ok", 900.0)
        _cycle(store, "score", "error", 950.0, error="db locked")
        health = stage_health(store, "score", 600, now=1000.0)
        assert health.last_status == "error"
        assert health.last_error == "db locked"
        assert health.last_success_at == 901.0


class TestPipelineHealth:
    def test_healthy(self, store: PipelineStore) -> None:
        for stage in ("ingest", "score", "execute"):
            _cycle(store, stage, "ok", 950.0)
        report = pipeline_health(store, 600, now=1000.0)
        assert report["healthy"] is True
        assert set(report["stages"]) == {"ingest", "score", "execute"}
        assert report["checked_at"] == 1000.0

    def test_one_stale_stage_unhealthy(self, store: PipelineStore) -> None:
        _cycle(store, "ingest", "ok", 950.0)
        _cycle(store, "score", "ok", 950.0)
        report = pipeline_health(store, 600, now=1000.0)
        assert report["healthy"] is False
        assert report["stages"]["execute"]["stale"] is True
