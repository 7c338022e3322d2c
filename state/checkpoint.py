"""
Key/value state persisted to SQLite between invocations.

Holds small serialized objects that each stage restores at the start of a
pass and saves at the end: the executor's RiskBudget, the ingestion
CircuitBoard and the autopilot control flags. Each save is atomic (single
SQLite transaction).
"""

from __future__ import annotations

import json
import logging
import signal
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS state_kv (
    name TEXT PRIMARY KEY,
    data_json TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);
"""

DEFAULT_DB_PATH = Path("pipeline.db")


@runtime_checkable
class Serializable(Protocol):
    """Protocol for objects that support to_dict/from_dict serialization."""

    def to_dict(self) -> dict: ...

    @classmethod
    def from_dict(cls, data: dict) -> Any: ...


class CheckpointManager:
    """
    Persists Serializable objects by name. Thread-safe for single-writer usage.

    Usage:
        mgr = CheckpointManager(db_path="pipeline.db")
        mgr.save("risk_budget", budget)
        budget = mgr.load("risk_budget", RiskBudget) or RiskBudget()
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def save(self, name: str, obj: Serializable) -> None:
        """Persist one object. Atomic; bumps the stored version."""
        self.save_all({name: obj})

    def save_all(self, objects: dict[str, Serializable]) -> int:
        """Save several objects in a single transaction. Returns count saved."""
        rows: list[tuple[str, str, float]] = []
        now = time.time()
        for name, obj in objects.items():
            rows.append((name, json.dumps(obj.to_dict(), default=str), now))
        if not rows:
            return 0

        with self._lock:
            conn = self._get_conn()
            conn.executemany(
                "INSERT INTO state_kv (name, data_json, version, updated_at) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(name) DO UPDATE SET data_json = excluded.data_json, "
                "version = state_kv.version + 1, updated_at = excluded.updated_at",
                rows,
            )
            conn.commit()

        logger.debug("State saved: %s", ", ".join(name for name, _, _ in rows))
        return len(rows)

    def load(self, name: str, cls: type) -> Any | None:
        """
        Load an object via cls.from_dict(). Returns None if not found.
        Falls back gracefully on corrupt JSON.
        """
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT data_json, updated_at FROM state_kv WHERE name = ?", (name,),
            ).fetchone()

        if row is None:
            logger.debug("State not found: %s", name)
            return None

        data_json, updated_at = row
        try:
            data = json.loads(data_json)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Corrupt state for %s, ignoring: %s", name, e)
            return None

        try:
            obj = cls.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to restore %s: %s", name, e)
            return None
        logger.debug("State restored: %s (%.1fs old)", name, time.time() - updated_at)
        return obj

    def load_metadata(self, name: str) -> dict[str, Any] | None:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT version, updated_at FROM state_kv WHERE name = ?", (name,),
            ).fetchone()
        if row is None:
            return None
        return {"version": row[0], "updated_at": row[1], "age_sec": time.time() - row[1]}

    def delete(self, name: str) -> bool:
        """Delete a stored object. Returns True if it existed."""
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute("DELETE FROM state_kv WHERE name = ?", (name,))
            conn.commit()
        return cur.rowcount > 0

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def install_shutdown_handlers(on_shutdown: Callable[[], None]) -> None:
    """Run *on_shutdown* (flush buffers, save state) on SIGTERM/SIGINT, then defer to the original handler."""
    original_sigterm = signal.getsignal(signal.SIGTERM)
    original_sigint = signal.getsignal(signal.SIGINT)

    def _shutdown_handler(signum: int, frame: Any) -> None:
        logger.info("Signal %d received, draining state...", signum)
        try:
            on_shutdown()
        except Exception as e:
            logger.error("Shutdown drain failed: %s", e)

        original = original_sigterm if signum == signal.SIGTERM else original_sigint
        if callable(original):
            original(signum, frame)
        elif original == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)
