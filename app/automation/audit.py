"""SQLite audit store for workflow runs.

This module defines the project database path, connection helper, schema
initialisation, run bookkeeping and per-item result logging, plus the
queries behind the processed-this-period check and the status statistics.
"""
from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import config
from .logging_utils import _automation_event
from .ports import WorkItemResult

DB_PATH: Path = config.DB_PATH


def get_connection() -> sqlite3.Connection:
    """Return a SQLite connection to the project database.

    The parent directory is created if missing and ``check_same_thread`` is
    disabled to allow reuse from different threads. Callers must manage
    concurrency at a higher layer.
    """

    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_schema() -> None:
    """Create the tables if they do not yet exist. Safe to call repeatedly."""

    statements: Iterable[str] = (
        """
        CREATE TABLE IF NOT EXISTS runs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            started_at      TEXT NOT NULL,
            ended_at        TEXT,
            trigger         TEXT NOT NULL,
            mode            TEXT NOT NULL,
            params_json     TEXT NOT NULL,
            status          TEXT NOT NULL,
            processed_count INTEGER NOT NULL DEFAULT 0,
            error_summary   TEXT
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_runs_started_at
            ON runs(started_at DESC);
        """,
        """
        CREATE TABLE IF NOT EXISTS item_results (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id       INTEGER,
            item_id      TEXT NOT NULL,
            mode         TEXT,
            success      INTEGER NOT NULL,
            detail       TEXT,
            skip_reason  TEXT,
            error_code   TEXT,
            attempts     INTEGER NOT NULL DEFAULT 0,
            extra_json   TEXT,
            recorded_at  TEXT NOT NULL,
            FOREIGN KEY(run_id) REFERENCES runs(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_item_results_item
            ON item_results(item_id, recorded_at);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_item_results_run
            ON item_results(run_id);
        """,
    )

    conn = get_connection()
    with conn:
        for statement in statements:
            conn.execute(statement)


def _utc_now() -> str:
    """Return a UTC timestamp formatted as ISO8601 without fractional seconds."""

    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _today() -> str:
    return time.strftime("%Y-%m-%d", time.gmtime())


def create_run(trigger: str, mode: str, params_json: str = "{}") -> int:
    """Insert a row into ``runs`` with status ``running`` and return its id."""

    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO runs (started_at, trigger, mode, params_json, status)
            VALUES (?, ?, ?, ?, 'running')
            """,
            (_utc_now(), trigger, mode, params_json),
        )
    return int(cursor.lastrowid)


def _close_run(
    run_id: int, status: str, processed_count: int, error_summary: Optional[str] = None
) -> None:
    conn = get_connection()
    with conn:
        conn.execute(
            """
            UPDATE runs
            SET status = ?, ended_at = ?, processed_count = ?, error_summary = ?
            WHERE id = ?
            """,
            (status, _utc_now(), processed_count, error_summary, run_id),
        )


def mark_run_completed(run_id: int, processed_count: int = 0) -> None:
    """Mark the provided run as completed."""

    _close_run(run_id, "completed", processed_count)


def mark_run_failed(run_id: int, error_summary: str, processed_count: int = 0) -> None:
    """Mark the provided run as failed with a short error summary."""

    _close_run(run_id, "failed", processed_count, error_summary)


def mark_run_stopped(run_id: int, processed_count: int = 0) -> None:
    """Mark the provided run as stopped by the operator."""

    _close_run(run_id, "stopped", processed_count)


def get_run(run_id: int) -> Optional[Dict[str, Any]]:
    conn = get_connection()
    row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
    return dict(row) if row else None


def latest_run_id() -> Optional[int]:
    conn = get_connection()
    row = conn.execute("SELECT id FROM runs ORDER BY id DESC LIMIT 1").fetchone()
    return int(row["id"]) if row else None


def record_item_result(
    result: WorkItemResult, *, run_id: Optional[int] = None, mode: Optional[str] = None
) -> int:
    """Insert one ``item_results`` row and return its id."""

    conn = get_connection()
    with conn:
        cursor = conn.execute(
            """
            INSERT INTO item_results (
                run_id, item_id, mode, success, detail, skip_reason,
                error_code, attempts, extra_json, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                result.item_id,
                mode,
                1 if result.success else 0,
                result.detail,
                result.skip_reason,
                result.error_code,
                result.attempts,
                json.dumps(result.extra, ensure_ascii=False) if result.extra else None,
                _utc_now(),
            ),
        )
    return int(cursor.lastrowid)


def was_item_handled(item_id: str, period: Optional[str] = None) -> bool:
    """Return ``True`` when ``item_id`` was successfully handled on ``period``.

    ``period`` is a ``YYYY-MM-DD`` UTC date and defaults to today. Skipped
    results do not count.
    """

    conn = get_connection()
    row = conn.execute(
        """
        SELECT 1 FROM item_results
        WHERE item_id = ? AND success = 1 AND skip_reason IS NULL
          AND substr(recorded_at, 1, 10) = ?
        LIMIT 1
        """,
        (str(item_id), period or _today()),
    ).fetchone()
    return row is not None


def processing_stats(period: Optional[str] = None) -> Dict[str, int]:
    """Return counts of audited results for ``period`` (default today)."""

    conn = get_connection()
    row = conn.execute(
        """
        SELECT
            COUNT(*) AS total,
            COALESCE(SUM(CASE WHEN success = 1 AND skip_reason IS NULL THEN 1 ELSE 0 END), 0) AS succeeded,
            COALESCE(SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END), 0) AS failed,
            COALESCE(SUM(CASE WHEN skip_reason IS NOT NULL THEN 1 ELSE 0 END), 0) AS skipped,
            COALESCE(SUM(CASE WHEN mode = ? THEN 1 ELSE 0 END), 0) AS manual,
            COALESCE(SUM(CASE WHEN mode = ? THEN 1 ELSE 0 END), 0) AS automatic
        FROM item_results
        WHERE substr(recorded_at, 1, 10) = ?
        """,
        (config.MANUAL_MODE, config.AUTOMATIC_MODE, period or _today()),
    ).fetchone()
    return {key: int(row[key]) for key in row.keys()}


def list_item_results(run_id: Optional[int] = None, limit: int = 500) -> List[Dict[str, Any]]:
    """Return audited results, newest first, optionally for one run."""

    conn = get_connection()
    if run_id is None:
        cursor = conn.execute(
            "SELECT * FROM item_results ORDER BY id DESC LIMIT ?",
            (int(limit),),
        )
    else:
        cursor = conn.execute(
            "SELECT * FROM item_results WHERE run_id = ? ORDER BY id DESC LIMIT ?",
            (int(run_id), int(limit)),
        )
    rows: List[Dict[str, Any]] = []
    for row in cursor.fetchall():
        payload = dict(row)
        payload["success"] = bool(payload["success"])
        extra = payload.pop("extra_json", None)
        payload["extra"] = json.loads(extra) if extra else {}
        rows.append(payload)
    return rows


class SqliteAuditSink:
    """``AuditSink`` that appends results of one run to ``item_results``."""

    def __init__(self, run_id: Optional[int] = None, mode: Optional[str] = None) -> None:
        self.run_id = run_id
        self.mode = mode

    def record(self, result: WorkItemResult) -> None:
        row_id = record_item_result(result, run_id=self.run_id, mode=self.mode)
        _automation_event(
            "audit",
            phase="persisted",
            run_id=self.run_id,
            item_id=result.item_id,
            row_id=row_id,
        )

    def was_handled_this_period(self, item_id: str) -> bool:
        return was_item_handled(item_id)


__all__ = [
    "DB_PATH",
    "SqliteAuditSink",
    "create_run",
    "get_connection",
    "get_run",
    "initialize_schema",
    "latest_run_id",
    "list_item_results",
    "mark_run_completed",
    "mark_run_failed",
    "mark_run_stopped",
    "processing_stats",
    "record_item_result",
    "was_item_handled",
]
