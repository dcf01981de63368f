from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from threading import Lock
from typing import Any, Iterable

from .logger import get_logger
from .runtime import DeploymentPlan, PipelineRun, RoleChange, utc_now
from .settings import settings

_schema_lock = Lock()
_initialized: set[str] = set()

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind-mounted volume that did not
    exist yet is created as one by Docker), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "tdc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    path = _resolve_db_path()
    conn = sqlite3.connect(path, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    if path not in _initialized:
        with _schema_lock:
            if path not in _initialized:
                _create_schema(conn)
                _initialized.add(path)
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        _create_schema(conn)


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          level TEXT NOT NULL,
          tier TEXT,
          subject TEXT,
          message TEXT NOT NULL
        );

        -- append-only; rows are never updated or deleted
        CREATE TABLE IF NOT EXISTS role_changes (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          seq INTEGER NOT NULL,
          ts TEXT NOT NULL,
          node_id TEXT NOT NULL,
          previous_primary TEXT,
          reason TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pipeline_runs (
          id TEXT PRIMARY KEY,
          release_id TEXT NOT NULL,
          status TEXT NOT NULL, -- running|succeeded|failed
          message TEXT NOT NULL,
          current_tier TEXT,
          started_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS deployment_plans (
          id TEXT PRIMARY KEY,
          run_id TEXT,
          tier TEXT NOT NULL,
          target TEXT NOT NULL,
          batch_size INTEGER NOT NULL,
          max_unavailable INTEGER NOT NULL,
          status TEXT NOT NULL, -- pending|rolling|succeeded|rolled_back|failed
          message TEXT NOT NULL,
          created_at TEXT NOT NULL,
          finished_at TEXT,
          FOREIGN KEY(run_id) REFERENCES pipeline_runs(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
        CREATE INDEX IF NOT EXISTS idx_plans_run_id ON deployment_plans(run_id);
        """
    )


def log_event(level: str, message: str, tier: str | None = None, subject: str | None = None) -> None:
    level = level.upper()
    get_logger(tier or "events").log(_LEVELS.get(level, logging.INFO), "%s%s", f"[{subject}] " if subject else "", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, tier, subject, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, tier, subject, message),
        )


def latest_events(limit: int = 100, tier: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if tier:
            rows = conn.execute("SELECT * FROM events WHERE tier=? ORDER BY id DESC LIMIT ?", (tier, limit)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def append_role_change(change: RoleChange) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO role_changes (seq, ts, node_id, previous_primary, reason) VALUES (?, ?, ?, ?, ?)",
            (change.seq, change.at, change.node_id, change.previous_primary, change.reason),
        )


def list_role_changes() -> list[RoleChange]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM role_changes ORDER BY id").fetchall()
        return [
            RoleChange(seq=r["seq"], at=r["ts"], node_id=r["node_id"], previous_primary=r["previous_primary"], reason=r["reason"])
            for r in rows
        ]


@dataclass(frozen=True)
class RunRow:
    id: str
    release_id: str
    status: str
    message: str
    current_tier: str | None
    started_at: str
    updated_at: str


@dataclass(frozen=True)
class PlanRow:
    id: str
    run_id: str | None
    tier: str
    target: str
    batch_size: int
    max_unavailable: int
    status: str
    message: str
    created_at: str
    finished_at: str | None


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def save_run(run: PipelineRun) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO pipeline_runs (id, release_id, status, message, current_tier, started_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              status=excluded.status,
              message=excluded.message,
              current_tier=excluded.current_tier,
              updated_at=excluded.updated_at
            """,
            (run.id, run.release_id, run.status.value, run.message, run.current_tier, run.started_at, run.updated_at),
        )
    for plan in run.plans:
        save_plan(plan, run_id=run.id)


def save_plan(plan: DeploymentPlan, run_id: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployment_plans
              (id, run_id, tier, target, batch_size, max_unavailable, status, message, created_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              run_id=COALESCE(excluded.run_id, deployment_plans.run_id),
              status=excluded.status,
              message=excluded.message,
              finished_at=excluded.finished_at
            """,
            (
                plan.id,
                run_id,
                plan.tier,
                plan.target.artifact,
                plan.batch_size,
                plan.max_unavailable,
                plan.status.value,
                plan.message,
                plan.created_at,
                plan.finished_at,
            ),
        )


def get_run(run_id: str) -> RunRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM pipeline_runs WHERE id=?", (run_id,)).fetchone()
        return RunRow(**dict(row)) if row else None


def list_runs(limit: int = 50) -> list[RunRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM pipeline_runs ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_dataclass(rows, RunRow)


def list_plans(run_id: str) -> list[PlanRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM deployment_plans WHERE run_id=? ORDER BY created_at, rowid", (run_id,)).fetchall()
        return _rows_to_dataclass(rows, PlanRow)
