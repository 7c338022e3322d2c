"""
Buffered audit log for autopilot decisions and scheduler transitions.

Producers append from any thread. flush() swaps the buffer for an empty one
under the lock and writes the swapped batch outside it; a failed write puts
the batch back at the front of the buffer for the next attempt. Error-level
entries and a full buffer trigger an immediate flush. There is no background
timer: callers flush at the end of a stage and drain() on shutdown.

Every entry is mirrored to the Python logger. After repeated flush failures
the log is degraded: mirrored entries are emitted one severity higher on the
fallback logger, and whatever cannot be stored on drain() is written there
in full.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("monitor.audit.fallback")


class AuditLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    ACTION = "action"


class EntityType(str, Enum):
    POSITION = "position"
    OPPORTUNITY = "opportunity"
    EXCHANGE = "exchange"
    SCHEDULE = "schedule"
    RISK = "risk"
    CONFIG = "config"
    SYSTEM = "system"


_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.ACTION: logging.INFO,
    AuditLevel.WARN: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}

_ESCALATED_LOG_LEVELS = {
    AuditLevel.INFO: logging.WARNING,
    AuditLevel.ACTION: logging.WARNING,
    AuditLevel.WARN: logging.ERROR,
    AuditLevel.ERROR: logging.CRITICAL,
}


@dataclass(frozen=True)
class AuditEntry:
    level: AuditLevel
    action: str
    entity_type: EntityType
    entity_id: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    def to_row(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "action": self.action,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "details_json": json.dumps(self.details, default=str, sort_keys=True),
        }


class AuditSink(Protocol):
    def insert_audit_entries(self, rows: list[dict[str, Any]], *, commit: bool = True) -> None: ...


class AuditLog:
    """Thread-safe buffered audit trail in front of an AuditSink (normally PipelineStore)."""

    def __init__(
        self,
        sink: AuditSink,
        max_buffer: int = 200,
        degrade_after_failures: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sink = sink
        self._max_buffer = max_buffer
        self._degrade_after = degrade_after_failures
        self._clock = clock
        self._buffer: list[AuditEntry] = []
        self._lock = threading.Lock()
        self._consecutive_failures = 0

    @property
    def degraded(self) -> bool:
        return self._consecutive_failures >= self._degrade_after

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def log(
        self,
        level: AuditLevel,
        action: str,
        entity_type: EntityType,
        entity_id: str = "",
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            level=level,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=dict(details or {}),
            timestamp=self._clock(),
        )
        self._mirror(entry)
        with self._lock:
            self._buffer.append(entry)
            should_flush = level == AuditLevel.ERROR or len(self._buffer) >= self._max_buffer
        if should_flush:
            self.flush()
        return entry

    def info(self, action: str, entity_type: EntityType, entity_id: str = "", **details: Any) -> AuditEntry:
        return self.log(AuditLevel.INFO, action, entity_type, entity_id, details)

    def warn(self, action: str, entity_type: EntityType, entity_id: str = "", **details: Any) -> AuditEntry:
        return self.log(AuditLevel.WARN, action, entity_type, entity_id, details)

    def error(self, action: str, entity_type: EntityType, entity_id: str = "", **details: Any) -> AuditEntry:
        return self.log(AuditLevel.ERROR, action, entity_type, entity_id, details)

    def action(self, action: str, entity_type: EntityType, entity_id: str = "", **details: Any) -> AuditEntry:
        return self.log(AuditLevel.ACTION, action, entity_type, entity_id, details)

    def flush(self) -> int:
        """Write buffered entries. Returns count written; failed batches are re-buffered."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0

        try:
            self._sink.insert_audit_entries([e.to_row() for e in batch])
        except Exception as e:
            with self._lock:
                self._buffer[:0] = batch
                self._consecutive_failures += 1
                failures = self._consecutive_failures
                self._spill_overflow()
            fallback_logger.error(
                "Audit flush failed (%d entries re-buffered, %d consecutive failures): %s",
                len(batch), failures, e,
            )
            return 0

        self._consecutive_failures = 0
        logger.debug("Audit flushed: %d entries", len(batch))
        return len(batch)

    def drain(self) -> int:
        """Flush everything on shutdown. Entries that still cannot be stored go to the fallback logger."""
        written = self.flush()
        with self._lock:
            leftover, self._buffer = self._buffer, []
        for entry in leftover:
            fallback_logger.critical("Unstored audit entry: %s", json.dumps(entry.to_row()))
        return written

    def _spill_overflow(self) -> None:
        # Caller holds the lock
        hard_cap = self._max_buffer * 10
        if len(self._buffer) <= hard_cap:
            return
        overflow = self._buffer[: len(self._buffer) - hard_cap]
        del self._buffer[: len(overflow)]
        for entry in overflow:
            fallback_logger.critical("Unstored audit entry: %s", json.dumps(entry.to_row()))

    def _mirror(self, entry: AuditEntry) -> None:
        if self.degraded:
            fallback_logger.log(
                _ESCALATED_LOG_LEVELS[entry.level], "[AUDIT] %s %s/%s %s",
                entry.action, entry.entity_type.value, entry.entity_id, entry.details,
            )
        else:
            logger.log(
                _LOG_LEVELS[entry.level], "[AUDIT] %s %s/%s %s",
                entry.action, entry.entity_type.value, entry.entity_id, entry.details,
            )
