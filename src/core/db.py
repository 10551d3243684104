"""SQLite database layer for the job queue and execution logs."""

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from src.core.schemas import ExecutionStep, Job, JobStatus

_QUEUE_TABLE = """
CREATE TABLE IF NOT EXISTS queue_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    params          TEXT    NOT NULL DEFAULT '{}',
    status          TEXT    NOT NULL DEFAULT 'pending',
    priority        INTEGER NOT NULL DEFAULT 0,
    scheduled_for   TEXT    NOT NULL,
    created_at      TEXT    NOT NULL,
    started_at      TEXT,
    completed_at    TEXT,
    result          TEXT,
    error           TEXT
);
"""

_QUEUE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_queue_pending
    ON queue_items (status, priority DESC, scheduled_for ASC);
"""

_EXECUTION_LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS execution_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id          INTEGER NOT NULL REFERENCES queue_items(id),
    step_number     INTEGER NOT NULL,
    action          TEXT    NOT NULL,
    details         TEXT    NOT NULL DEFAULT '',
    elapsed_ms      INTEGER NOT NULL DEFAULT 0
);
"""


def init_db(path: str | Path) -> sqlite3.Connection:
    """Create the database and tables, returning a connection."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(_QUEUE_TABLE)
    conn.execute(_QUEUE_INDEX)
    conn.execute(_EXECUTION_LOGS_TABLE)
    conn.commit()
    return conn


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        params=json.loads(row["params"] or "{}"),
        status=JobStatus(row["status"]),
        priority=row["priority"],
        scheduled_for=datetime.fromisoformat(row["scheduled_for"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        result=json.loads(row["result"]) if row["result"] else None,
        error=row["error"],
    )


def enqueue_job(
    conn: sqlite3.Connection,
    params: dict[str, Any],
    priority: int = 0,
    scheduled_for: datetime | None = None,
) -> int:
    """Insert a pending job. Returns the row ID."""
    now = datetime.now()
    cursor = conn.execute(
        """
        INSERT INTO queue_items (params, status, priority, scheduled_for, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            json.dumps(params),
            JobStatus.PENDING.value,
            priority,
            (scheduled_for or now).isoformat(),
            now.isoformat(),
        ),
    )
    conn.commit()
    return cursor.lastrowid or 0


def get_job(conn: sqlite3.Connection, job_id: int) -> Job | None:
    row = conn.execute("SELECT * FROM queue_items WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row is not None else None


def fetch_pending_jobs(
    conn: sqlite3.Connection,
    limit: int,
    now: datetime | None = None,
) -> list[Job]:
    """Pending jobs that are due, highest priority first, then oldest schedule."""
    if limit <= 0:
        return []
    cutoff = (now or datetime.now()).isoformat()
    rows = conn.execute(
        """
        SELECT * FROM queue_items
        WHERE status = ? AND scheduled_for <= ?
        ORDER BY priority DESC, scheduled_for ASC, id ASC
        LIMIT ?
        """,
        (JobStatus.PENDING.value, cutoff, limit),
    ).fetchall()
    return [_row_to_job(r) for r in rows]


def mark_running(conn: sqlite3.Connection, job_id: int) -> bool:
    """Move a job from pending to running.

    Returns False if the job was no longer pending.
    """
    cursor = conn.execute(
        "UPDATE queue_items SET status = ?, started_at = ? WHERE id = ? AND status = ?",
        (JobStatus.RUNNING.value, datetime.now().isoformat(), job_id, JobStatus.PENDING.value),
    )
    conn.commit()
    return cursor.rowcount == 1


def save_job_result(
    conn: sqlite3.Connection,
    job_id: int,
    status: JobStatus,
    result: dict[str, Any],
    error: str | None = None,
) -> None:
    """Record the terminal status, result payload and error of a job."""
    conn.execute(
        """
        UPDATE queue_items
        SET status = ?, completed_at = ?, result = ?, error = ?
        WHERE id = ?
        """,
        (status.value, datetime.now().isoformat(), json.dumps(result, default=str), error, job_id),
    )
    conn.commit()


def insert_execution_logs(
    conn: sqlite3.Connection,
    job_id: int,
    steps: list[ExecutionStep],
) -> int:
    """Store a run's audit trail in order. Returns the number of rows written."""
    conn.executemany(
        """
        INSERT INTO execution_logs (job_id, step_number, action, details, elapsed_ms)
        VALUES (?, ?, ?, ?, ?)
        """,
        [(job_id, i, s.action, s.detail, s.elapsed_ms) for i, s in enumerate(steps)],
    )
    conn.commit()
    return len(steps)


def get_execution_logs(conn: sqlite3.Connection, job_id: int) -> list[ExecutionStep]:
    rows = conn.execute(
        """
        SELECT action, details, elapsed_ms FROM execution_logs
        WHERE job_id = ? ORDER BY step_number
        """,
        (job_id,),
    ).fetchall()
    return [
        ExecutionStep(action=r["action"], detail=r["details"], elapsed_ms=r["elapsed_ms"])
        for r in rows
    ]


def fail_stale_jobs(
    conn: sqlite3.Connection,
    older_than: timedelta,
    now: datetime | None = None,
) -> list[int]:
    """Force-fail jobs stuck in running longer than ``older_than``.

    Returns the IDs of the jobs that were failed.
    """
    current = now or datetime.now()
    cutoff = (current - older_than).isoformat()
    rows = conn.execute(
        "SELECT id FROM queue_items WHERE status = ? AND (started_at IS NULL OR started_at < ?)",
        (JobStatus.RUNNING.value, cutoff),
    ).fetchall()
    ids = [r["id"] for r in rows]
    minutes = int(older_than.total_seconds() // 60)
    for job_id in ids:
        conn.execute(
            "UPDATE queue_items SET status = ?, completed_at = ?, error = ? WHERE id = ?",
            (
                JobStatus.FAILED.value,
                current.isoformat(),
                f"stale: still running after {minutes} minutes",
                job_id,
            ),
        )
    conn.commit()
    return ids
