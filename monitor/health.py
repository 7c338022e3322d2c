"""
Cycle health per pipeline stage, for the dashboard's stale/error banner.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass

from state.store import PipelineStore

STAGES = ("ingest", "score", "execute")


@dataclass(frozen=True)
class StageHealth:
    stage: str
    last_started_at: float | None
    last_status: str | None
    last_success_at: float | None
    last_error: str
    stale: bool


def stage_health(store: PipelineStore, stage: str, stale_after_sec: float, now: float) -> StageHealth:
    recent = store.get_cycles(stage, limit=1)
    latest = recent[0] if recent else None
    success = store.get_latest_cycle(stage, status="ok")
    last_success_at = (success["finished_at"] or success["started_at"]) if success else None
    last_error = ""
    if latest and latest["status"] not in ("ok", "running"):
        last_error = latest["error"] or latest["status"]
    return StageHealth(
        stage=stage,
        last_started_at=latest["started_at"] if latest else None,
        last_status=latest["status"] if latest else None,
        last_success_at=last_success_at,
        last_error=last_error,
        stale=last_success_at is None or now - last_success_at > stale_after_sec,
    )


def pipeline_health(store: PipelineStore, stale_after_sec: float, now: float | None = None) -> dict:
    """Per-stage health plus an overall flag: healthy only if no stage is stale or erroring."""
    now = now if now is not None else time.time()
    stages = [stage_health(store, s, stale_after_sec, now) for s in STAGES]
    return {
        "healthy": not any(s.stale or s.last_error for s in stages),
        "checked_at": now,
        "stages": {s.stage: asdict(s) for s in stages},
    }
