"""
SQLite storage for the pipeline. WAL mode for concurrent read/write.

All stage writes go through PipelineStore; the API server reads the same
file. Schedules, snapshots, opportunities, positions, the audit log, cycle
records and the executor lease live here. Small serialized objects (risk
budget, circuit board, control flags) live in state/checkpoint.py.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path("pipeline.db")

ACTIVE_POSITION_STATUSES = ("pending", "open", "closing")


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


class PipelineStore:
    """Thread-safe SQLite store. One connection per thread."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._db_path = str(db_path or DEFAULT_DB_PATH)
        self._local = threading.local()
        self._init_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = _dict_factory
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
        return conn

    def _init_schema(self) -> None:
        conn = self._conn
        conn.executescript(_SCHEMA)
        conn.commit()

    def begin_transaction(self) -> None:
        """Begin a write transaction if one is not already active."""
        if not self._conn.in_transaction:
            self._conn.execute("BEGIN")

    def commit(self) -> None:
        """Commit the current transaction if active."""
        if self._conn.in_transaction:
            self._conn.commit()

    def rollback(self) -> None:
        """Rollback the current transaction if active."""
        if self._conn.in_transaction:
            self._conn.rollback()

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # ── Schedules ──

    def upsert_schedules(self, rows: list[dict[str, Any]], *, commit: bool = True) -> None:
        if not rows:
            return
        self._conn.executemany(
            """INSERT INTO schedules
               (exchange, symbol, tier, poll_interval_ms, last_polled_at,
                last_success_at, consecutive_failures, circuit_state, active)
               VALUES (:exchange, :symbol, :tier, :poll_interval_ms, :last_polled_at,
                       :last_success_at, :consecutive_failures, :circuit_state, :active)
               ON CONFLICT(exchange, symbol) DO UPDATE SET
                 tier = excluded.tier,
                 poll_interval_ms = excluded.poll_interval_ms,
                 last_polled_at = excluded.last_polled_at,
                 last_success_at = excluded.last_success_at,
                 consecutive_failures = excluded.consecutive_failures,
                 circuit_state = excluded.circuit_state,
                 active = excluded.active""",
            rows,
        )
        if commit:
            self._conn.commit()

    def get_schedules(self, active_only: bool = False) -> list[dict[str, Any]]:
        sql = "SELECT * FROM schedules"
        if active_only:
            sql += " WHERE active = 1"
        return self._conn.execute(sql + " ORDER BY tier, exchange, symbol").fetchall()

    # ── Snapshots ──

    def insert_snapshots(self, rows: list[dict[str, Any]], *, commit: bool = True) -> None:
        if not rows:
            return
        self._conn.executemany(
            """INSERT INTO snapshots
               (exchange, symbol, mark_price, funding_rate, funding_interval_hours,
                next_funding_time, open_interest, volume_24h, bid_price, ask_price,
                is_liquid, observed_at)
               VALUES (:exchange, :symbol, :mark_price, :funding_rate, :funding_interval_hours,
                       :next_funding_time, :open_interest, :volume_24h, :bid_price, :ask_price,
                       :is_liquid, :observed_at)""",
            rows,
        )
        if commit:
            self._conn.commit()

    def get_latest_snapshots(self, since: float | None = None) -> list[dict[str, Any]]:
        """Most recent snapshot per (exchange, symbol), optionally only those observed at or after *since*."""
        sql = """SELECT s.* FROM snapshots s
                 JOIN (SELECT MAX(id) AS id FROM snapshots GROUP BY exchange, symbol) latest
                   ON s.id = latest.id"""
        params: list[Any] = []
        if since is not None:
            sql += " WHERE s.observed_at >= ?"
            params.append(since)
        sql += " ORDER BY s.symbol, s.exchange"
        return self._conn.execute(sql, params).fetchall()

    def get_latest_mark(self, exchange: str, symbol: str) -> float | None:
        row = self._conn.execute(
            "SELECT mark_price FROM snapshots WHERE exchange = ? AND symbol = ? ORDER BY id DESC LIMIT 1",
            (exchange, symbol),
        ).fetchone()
        return row["mark_price"] if row else None

    def count_snapshots(self, exchange: str | None = None) -> int:
        if exchange is None:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM snapshots").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM snapshots WHERE exchange = ?", (exchange,),
            ).fetchone()
        return row["n"]

    def prune_snapshots(self, older_than: float, *, commit: bool = True) -> int:
        """Delete superseded snapshots older than *older_than*. The latest per key is always kept."""
        cur = self._conn.execute(
            """DELETE FROM snapshots
               WHERE observed_at < ?
                 AND id NOT IN (SELECT MAX(id) FROM snapshots GROUP BY exchange, symbol)""",
            (older_than,),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount

    # ── Cycles ──

    def start_cycle(self, stage: str, started_at: float | None = None, *, commit: bool = True) -> int:
        cur = self._conn.execute(
            "INSERT INTO cycles (stage, started_at, status) VALUES (?, ?, 'running')",
            (stage, started_at if started_at is not None else time.time()),
        )
        if commit:
            self._conn.commit()
        return cur.lastrowid  # type: ignore[return-value]

    def finish_cycle(
        self,
        cycle_id: int,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
        finished_at: float | None = None,
        *,
        commit: bool = True,
    ) -> None:
        self._conn.execute(
            "UPDATE cycles SET finished_at = ?, status = ?, stats_json = ?, error = ? WHERE id = ?",
            (
                finished_at if finished_at is not None else time.time(),
                status,
                json.dumps(stats or {}, default=str),
                error,
                cycle_id,
            ),
        )
        if commit:
            self._conn.commit()

    def get_latest_cycle(self, stage: str, status: str | None = "ok") -> dict[str, Any] | None:
        sql = "SELECT * FROM cycles WHERE stage = ?"
        params: list[Any] = [stage]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        row = self._conn.execute(sql + " ORDER BY id DESC LIMIT 1", params).fetchone()
        if row:
            row["stats"] = json.loads(row.pop("stats_json") or "{}")
        return row

    def get_cycles(self, stage: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        sql = "SELECT * FROM cycles"
        params: list[Any] = []
        if stage:
            sql += " WHERE stage = ?"
            params.append(stage)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        for row in rows:
            row["stats"] = json.loads(row.pop("stats_json") or "{}")
        return rows

    # ── Opportunities / signals ──

    def insert_opportunities(self, cycle_id: int, rows: list[dict[str, Any]], *, commit: bool = True) -> None:
        if not rows:
            if commit:
                self._conn.commit()
            return
        self._conn.executemany(
            """INSERT INTO opportunities
               (cycle_id, symbol, long_exchange, short_exchange, long_funding_rate,
                short_funding_rate, spread_bps, fee_bps, slippage_bps, net_edge_bps,
                price_spread_bps, liquidity_score, risk_tier, long_mark_price,
                short_mark_price, computed_at, score, is_signal, rank, reject_reason)
               VALUES (:cycle_id, :symbol, :long_exchange, :short_exchange, :long_funding_rate,
                       :short_funding_rate, :spread_bps, :fee_bps, :slippage_bps, :net_edge_bps,
                       :price_spread_bps, :liquidity_score, :risk_tier, :long_mark_price,
                       :short_mark_price, :computed_at, :score, :is_signal, :rank, :reject_reason)""",
            [{**r, "cycle_id": cycle_id} for r in rows],
        )
        if commit:
            self._conn.commit()

    def get_opportunities(
        self,
        cycle_id: int | None = None,
        signals_only: bool = False,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Opportunities of one scoring cycle (latest successful one by default), best first."""
        if cycle_id is None:
            latest = self.get_latest_cycle("score")
            if latest is None:
                return []
            cycle_id = latest["id"]
        sql = "SELECT * FROM opportunities WHERE cycle_id = ?"
        if signals_only:
            sql += " AND is_signal = 1"
        sql += " ORDER BY is_signal DESC, rank ASC, score DESC, net_edge_bps DESC LIMIT ?"
        return self._conn.execute(sql, (cycle_id, limit)).fetchall()

    # ── Positions ──

    def insert_position(self, row: dict[str, Any], *, commit: bool = True) -> None:
        cols = ", ".join(row)
        placeholders = ", ".join(f":{c}" for c in row)
        self._conn.execute(f"INSERT INTO positions ({cols}) VALUES ({placeholders})", row)
        if commit:
            self._conn.commit()

    def update_position(self, position_id: str, fields: dict[str, Any], *, commit: bool = True) -> None:
        if not fields:
            return
        fields = {"updated_at": time.time(), **fields}
        assignments = ", ".join(f"{c} = :{c}" for c in fields)
        self._conn.execute(
            f"UPDATE positions SET {assignments} WHERE id = :_id",
            {**fields, "_id": position_id},
        )
        if commit:
            self._conn.commit()

    def get_position(self, position_id: str) -> dict[str, Any] | None:
        return self._conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()

    def get_positions(self, statuses: tuple[str, ...] | None = None, limit: int = 500) -> list[dict[str, Any]]:
        sql = "SELECT * FROM positions"
        params: list[Any] = []
        if statuses:
            sql += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return self._conn.execute(sql, params).fetchall()

    def find_active_position(self, symbol: str, long_exchange: str, short_exchange: str) -> dict[str, Any] | None:
        return self._conn.execute(
            f"""SELECT * FROM positions
                WHERE symbol = ? AND long_exchange = ? AND short_exchange = ?
                  AND status IN ({', '.join('?' for _ in ACTIVE_POSITION_STATUSES)})
                LIMIT 1""",
            (symbol, long_exchange, short_exchange, *ACTIVE_POSITION_STATUSES),
        ).fetchone()

    def request_close(self, position_id: str, *, commit: bool = True) -> bool:
        """Flag an open position for closing on the next executor run. Returns False if not open."""
        cur = self._conn.execute(
            "UPDATE positions SET close_requested = 1, updated_at = ? WHERE id = ? AND status = 'open'",
            (time.time(), position_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount > 0

    # ── Audit log ──

    def insert_audit_entries(self, rows: list[dict[str, Any]], *, commit: bool = True) -> None:
        if not rows:
            return
        self._conn.executemany(
            """INSERT INTO audit_log (timestamp, level, action, entity_type, entity_id, details_json)
               VALUES (:timestamp, :level, :action, :entity_type, :entity_id, :details_json)""",
            rows,
        )
        if commit:
            self._conn.commit()

    def get_audit_entries(
        self,
        limit: int = 100,
        level: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if level:
            clauses.append("level = ?")
            params.append(level)
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        sql = "SELECT * FROM audit_log"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        for row in rows:
            row["details"] = json.loads(row.pop("details_json") or "{}")
        return rows

    # ── Leases ──

    def acquire_lease(self, name: str, owner: str, ttl_sec: float, now: float | None = None) -> bool:
        """Take a named lease if it is free, expired, or already ours. Atomic across processes."""
        now = now if now is not None else time.time()
        conn = self._conn
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN IMMEDIATE")
        try:
            row = conn.execute("SELECT owner, expires_at FROM leases WHERE name = ?", (name,)).fetchone()
            if row and row["owner"] != owner and row["expires_at"] > now:
                conn.rollback()
                return False
            conn.execute(
                """INSERT INTO leases (name, owner, expires_at) VALUES (?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at""",
                (name, owner, now + ttl_sec),
            )
            conn.commit()
            return True
        except sqlite3.Error:
            conn.rollback()
            raise

    def release_lease(self, name: str, owner: str) -> None:
        self._conn.execute("DELETE FROM leases WHERE name = ? AND owner = ?", (name, owner))
        self._conn.commit()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schedules (
    exchange TEXT NOT NULL,
    symbol TEXT NOT NULL,
    tier INTEGER NOT NULL,
    poll_interval_ms INTEGER NOT NULL,
    last_polled_at REAL,
    last_success_at REAL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    circuit_state TEXT NOT NULL DEFAULT 'closed',
    active INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (exchange, symbol)
);

CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    exchange TEXT NOT NULL,
    symbol TEXT NOT NULL,
    mark_price REAL NOT NULL,
    funding_rate REAL NOT NULL,
    funding_interval_hours REAL NOT NULL,
    next_funding_time REAL,
    open_interest REAL NOT NULL DEFAULT 0,
    volume_24h REAL NOT NULL DEFAULT 0,
    bid_price REAL NOT NULL DEFAULT 0,
    ask_price REAL NOT NULL DEFAULT 0,
    is_liquid INTEGER NOT NULL DEFAULT 1,
    observed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_snapshots_key ON snapshots(exchange, symbol, id);
CREATE INDEX IF NOT EXISTS idx_snapshots_observed ON snapshots(observed_at);

CREATE TABLE IF NOT EXISTS cycles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stage TEXT NOT NULL,
    started_at REAL NOT NULL,
    finished_at REAL,
    status TEXT NOT NULL,
    stats_json TEXT NOT NULL DEFAULT '{}',
    error TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_cycles_stage ON cycles(stage, id);

CREATE TABLE IF NOT EXISTS opportunities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle_id INTEGER NOT NULL REFERENCES cycles(id),
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    long_funding_rate REAL NOT NULL,
    short_funding_rate REAL NOT NULL,
    spread_bps REAL NOT NULL,
    fee_bps REAL NOT NULL,
    slippage_bps REAL NOT NULL,
    net_edge_bps REAL NOT NULL,
    price_spread_bps REAL NOT NULL,
    liquidity_score REAL NOT NULL,
    risk_tier TEXT NOT NULL,
    long_mark_price REAL NOT NULL,
    short_mark_price REAL NOT NULL,
    computed_at REAL NOT NULL,
    score REAL NOT NULL DEFAULT 0,
    is_signal INTEGER NOT NULL DEFAULT 0,
    rank INTEGER,
    reject_reason TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_opportunities_cycle ON opportunities(cycle_id, is_signal, rank);

CREATE TABLE IF NOT EXISTS positions (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    long_exchange TEXT NOT NULL,
    short_exchange TEXT NOT NULL,
    status TEXT NOT NULL,
    mode TEXT NOT NULL,
    risk_tier TEXT NOT NULL,
    size_eur REAL NOT NULL,
    long_size REAL NOT NULL DEFAULT 0,
    short_size REAL NOT NULL DEFAULT 0,
    entry_long_price REAL,
    entry_short_price REAL,
    exit_long_price REAL,
    exit_short_price REAL,
    entry_spread_bps REAL NOT NULL DEFAULT 0,
    entry_net_edge_bps REAL NOT NULL DEFAULT 0,
    funding_collected_eur REAL NOT NULL DEFAULT 0,
    fees_eur REAL NOT NULL DEFAULT 0,
    realized_pnl REAL,
    long_order_id TEXT NOT NULL DEFAULT '',
    short_order_id TEXT NOT NULL DEFAULT '',
    close_reason TEXT NOT NULL DEFAULT '',
    error TEXT NOT NULL DEFAULT '',
    last_funding_at REAL,
    created_at REAL NOT NULL,
    opened_at REAL,
    closed_at REAL,
    updated_at REAL NOT NULL,
    close_requested INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_positions_key ON positions(symbol, long_exchange, short_exchange, status);
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_one_active
    ON positions(symbol, long_exchange, short_exchange)
    WHERE status IN ('pending', 'open', 'closing');

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    level TEXT NOT NULL,
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    details_json TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""
