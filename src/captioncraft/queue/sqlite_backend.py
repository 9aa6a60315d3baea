"""SQLite implementation of the Broker.

This module provides the durable, crash-safe job queue shared by the producer
and worker processes, using:
- sqlite-utils for schema management and simple reads
- WAL mode for concurrent readers across processes
- BEGIN IMMEDIATE transactions for atomic claim
- Exponential backoff between job attempts (available_at in the future)
- Bounded retention of finished jobs per queue
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from sqlite_utils import Database

from .backends import Broker
from .connection import PooledConnection
from .models import Job, JobHandle, JobOptions, JobStatus

SCHEMA_SQL = """
-- Jobs table (all queues)
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    options TEXT NOT NULL,
    status TEXT NOT NULL,
    attempts INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 2,
    enqueued_at TEXT NOT NULL,
    available_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    worker_id TEXT,
    last_error TEXT,
    result TEXT,
    repeat_key TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(queue_name, status, available_at, enqueued_at);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(queue_name, status, finished_at);
CREATE INDEX IF NOT EXISTS idx_jobs_repeat ON jobs(repeat_key, status);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);
"""

MAX_ERROR_LENGTH = 500


def _ts(value: datetime) -> str:
    # Fixed width so timestamps compare correctly as text
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _transaction(db: Database) -> Iterator[None]:
    """Explicit write transaction (the connection runs in autocommit mode)."""
    db.conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except Exception:
        db.conn.execute("ROLLBACK")
        raise
    db.conn.execute("COMMIT")


def _rows(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    columns = [c[0] for c in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _row_to_job(row: Dict[str, Any]) -> Job:
    """Convert a jobs row to a Job model."""
    return Job(
        job_id=row["job_id"],
        queue_name=row["queue_name"],
        job_type=row["job_type"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
        status=JobStatus(row["status"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        options=JobOptions(**json.loads(row["options"])),
        enqueued_at=_parse_ts(row["enqueued_at"]),
        available_at=_parse_ts(row["available_at"]),
        started_at=_parse_ts(row["started_at"]),
        finished_at=_parse_ts(row["finished_at"]),
        worker_id=row["worker_id"],
        last_error=row["last_error"],
        repeat_key=row["repeat_key"],
    )


class SQLiteBroker(Broker):
    """SQLite-backed broker over the shared pooled connection.

    Features:
    - Atomic claim via UPDATE...RETURNING inside BEGIN IMMEDIATE
    - Backoff between attempts without a scheduler process
    - Retention pruning on every terminal ack
    - Recurring jobs re-inserted on completion
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      worker processes can never claim the same job
    - Lock contention is retried by the pooled connection, not here
    """

    def __init__(self, connection: PooledConnection):
        self.connection = connection
        connection.ensure_schema("broker", SCHEMA_SQL)

    # -- enqueue ---------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        options: JobOptions,
    ) -> JobHandle:
        return await self.connection.call(self._enqueue, queue_name, job_type, payload, options)

    def _enqueue(
        self,
        db: Database,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        options: JobOptions,
    ) -> JobHandle:
        repeat_key = f"{queue_name}:{job_type}" if options.repeat_every_s else None
        now = datetime.now()

        with _transaction(db):
            if repeat_key:
                existing = db.conn.execute(
                    "SELECT job_id FROM jobs WHERE repeat_key = ? AND status IN (?, ?) LIMIT 1",
                    (repeat_key, JobStatus.PENDING.value, JobStatus.RUNNING.value),
                ).fetchone()
                if existing:
                    return JobHandle(job_id=existing[0], queue_name=queue_name, job_type=job_type)

            job_id = uuid.uuid4().hex
            self._insert_job(
                db,
                job_id=job_id,
                queue_name=queue_name,
                job_type=job_type,
                payload=payload,
                options=options,
                available_at=now + timedelta(seconds=options.delay_s),
                repeat_key=repeat_key,
            )

        return JobHandle(job_id=job_id, queue_name=queue_name, job_type=job_type)

    def _insert_job(
        self,
        db: Database,
        job_id: str,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        options: JobOptions,
        available_at: datetime,
        repeat_key: Optional[str],
    ) -> None:
        db.conn.execute(
            """
            INSERT INTO jobs (
                job_id, queue_name, job_type, payload, options, status,
                attempts, max_attempts, enqueued_at, available_at, repeat_key
            ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (
                job_id,
                queue_name,
                job_type,
                json.dumps(payload),
                options.model_dump_json(),
                JobStatus.PENDING.value,
                options.attempts,
                _ts(datetime.now()),
                _ts(available_at),
                repeat_key,
            ),
        )
        self._log_transition(db, job_id, None, JobStatus.PENDING.value)

    # -- dequeue ---------------------------------------------------------

    async def dequeue(self, queue_name: str, worker_id: str) -> Optional[Job]:
        return await self.connection.call(self._dequeue, queue_name, worker_id)

    def _dequeue(self, db: Database, queue_name: str, worker_id: str) -> Optional[Job]:
        now = _ts(datetime.now())

        with _transaction(db):
            cursor = db.conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    worker_id = ?,
                    started_at = ?
                WHERE job_id = (
                    SELECT job_id FROM jobs
                    WHERE queue_name = ? AND status = ? AND available_at <= ?
                    ORDER BY available_at ASC, enqueued_at ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (
                    JobStatus.RUNNING.value,
                    worker_id,
                    now,
                    queue_name,
                    JobStatus.PENDING.value,
                    now,
                ),
            )
            rows = _rows(cursor)
            if not rows:
                return None

            self._log_transition(
                db, rows[0]["job_id"], JobStatus.PENDING.value, JobStatus.RUNNING.value, worker_id
            )

        return _row_to_job(rows[0])

    # -- acknowledgements ------------------------------------------------

    async def ack_success(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        await self.connection.call(self._ack_success, job_id, result)

    def _ack_success(self, db: Database, job_id: str, result: Optional[Dict[str, Any]]) -> None:
        with _transaction(db):
            job = self._fetch_job(db, job_id)
            if job is None:
                return

            db.conn.execute(
                """
                UPDATE jobs
                SET status = ?, finished_at = ?, result = ?
                WHERE job_id = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    _ts(datetime.now()),
                    json.dumps(result or {}, default=str),
                    job_id,
                ),
            )
            self._log_transition(db, job_id, JobStatus.RUNNING.value, JobStatus.COMPLETED.value)
            self._schedule_repeat(db, job)
            self._prune(db, job.queue_name, JobStatus.COMPLETED, job.options.remove_on_complete)

    async def ack_fail(self, job_id: str, error: str, retry: bool = True) -> JobStatus:
        return await self.connection.call(self._ack_fail, job_id, error, retry)

    def _ack_fail(self, db: Database, job_id: str, error: str, retry: bool) -> JobStatus:
        error_snippet = error[:MAX_ERROR_LENGTH] if error else None

        with _transaction(db):
            job = self._fetch_job(db, job_id)
            if job is None:
                return JobStatus.FAILED

            attempts = job.attempts + 1

            if retry and attempts < job.max_attempts:
                delay = job.options.backoff.delay_for(attempts)
                db.conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, attempts = ?, last_error = ?,
                        worker_id = NULL, available_at = ?
                    WHERE job_id = ?
                    """,
                    (
                        JobStatus.PENDING.value,
                        attempts,
                        error_snippet,
                        _ts(datetime.now() + timedelta(seconds=delay)),
                        job_id,
                    ),
                )
                self._log_transition(
                    db, job_id, JobStatus.RUNNING.value, JobStatus.PENDING.value, error=error_snippet
                )
                return JobStatus.PENDING

            db.conn.execute(
                """
                UPDATE jobs
                SET status = ?, attempts = ?, last_error = ?, finished_at = ?
                WHERE job_id = ?
                """,
                (JobStatus.FAILED.value, attempts, error_snippet, _ts(datetime.now()), job_id),
            )
            self._log_transition(
                db, job_id, JobStatus.RUNNING.value, JobStatus.FAILED.value, error=error_snippet
            )
            self._schedule_repeat(db, job)
            self._prune(db, job.queue_name, JobStatus.FAILED, job.options.remove_on_fail)
            return JobStatus.FAILED

    def _schedule_repeat(self, db: Database, job: Job) -> None:
        """Insert the next occurrence of a recurring job."""
        if not job.options.repeat_every_s:
            return
        self._insert_job(
            db,
            job_id=uuid.uuid4().hex,
            queue_name=job.queue_name,
            job_type=job.job_type,
            payload=job.payload,
            options=job.options,
            available_at=datetime.now() + timedelta(seconds=job.options.repeat_every_s),
            repeat_key=job.repeat_key,
        )

    def _prune(self, db: Database, queue_name: str, status: JobStatus, keep: int) -> None:
        """Keep only the ``keep`` most recently finished jobs with ``status``."""
        db.conn.execute(
            """
            DELETE FROM jobs
            WHERE queue_name = ? AND status = ?
              AND job_id NOT IN (
                  SELECT job_id FROM jobs
                  WHERE queue_name = ? AND status = ?
                  ORDER BY finished_at DESC
                  LIMIT ?
              )
            """,
            (queue_name, status.value, queue_name, status.value, keep),
        )
        db.conn.execute(
            "DELETE FROM state_transitions WHERE job_id NOT IN (SELECT job_id FROM jobs)"
        )

    # -- queries ---------------------------------------------------------

    def _fetch_job(self, db: Database, job_id: str) -> Optional[Job]:
        rows = list(db["jobs"].rows_where("job_id = ?", [job_id]))
        return _row_to_job(rows[0]) if rows else None

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.connection.call(self._fetch_job, job_id)

    async def counts(self, queue_name: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        return await self.connection.call(self._counts, queue_name)

    def _counts(self, db: Database, queue_name: Optional[str]) -> Dict[str, Dict[str, int]]:
        sql = "SELECT queue_name, status, COUNT(*) FROM jobs"
        params: List[Any] = []
        if queue_name:
            sql += " WHERE queue_name = ?"
            params.append(queue_name)
        sql += " GROUP BY queue_name, status"

        result: Dict[str, Dict[str, int]] = {}
        for name, status, count in db.conn.execute(sql, params).fetchall():
            per_queue = result.setdefault(name, {s.value: 0 for s in JobStatus})
            per_queue[status] = count
        return result

    async def list_jobs(self, queue_name: str, status: Optional[str] = None) -> List[Job]:
        return await self.connection.call(self._list_jobs, queue_name, status)

    def _list_jobs(self, db: Database, queue_name: str, status: Optional[str]) -> List[Job]:
        if status:
            rows = db["jobs"].rows_where(
                "queue_name = ? AND status = ?", [queue_name, status], order_by="enqueued_at"
            )
        else:
            rows = db["jobs"].rows_where("queue_name = ?", [queue_name], order_by="enqueued_at")
        return [_row_to_job(row) for row in rows]

    async def reset_stale_running(self, timeout_s: int = 7200) -> int:
        return await self.connection.call(self._reset_stale_running, timeout_s)

    def _reset_stale_running(self, db: Database, timeout_s: int) -> int:
        """Reset jobs whose worker vanished mid-run.

        Resets to 'pending' without incrementing attempts (a crash is not a
        stage failure) and clears worker_id.
        """
        cutoff = _ts(datetime.now() - timedelta(seconds=timeout_s))

        with _transaction(db):
            cursor = db.conn.execute(
                """
                UPDATE jobs
                SET status = ?, worker_id = NULL
                WHERE status = ? AND started_at < ?
                RETURNING job_id
                """,
                (JobStatus.PENDING.value, JobStatus.RUNNING.value, cutoff),
            )
            job_ids = [row[0] for row in cursor.fetchall()]

            for job_id in job_ids:
                self._log_transition(
                    db,
                    job_id,
                    JobStatus.RUNNING.value,
                    JobStatus.PENDING.value,
                    error="Reset stale job (crash recovery)",
                )

        return len(job_ids)

    def _log_transition(
        self,
        db: Database,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail."""
        db.conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(datetime.now()), worker_id, error[:200] if error else None),
        )
