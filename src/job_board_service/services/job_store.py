"""SQLite-backed storage for jobs and everything owned by a job."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable


class DuplicateApplicationError(Exception):
    """Raised when a worker already has an application row for a job."""


class DuplicateReviewError(Exception):
    """Raised when a reviewer already reviewed a job."""


class PaymentFirstViolationError(Exception):
    """Raised when a write would make a job open without an authorized escrow hold."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    poster_id TEXT NOT NULL,
    worker_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    location TEXT,
    required_skills TEXT NOT NULL DEFAULT '[]',
    payment_amount INTEGER NOT NULL,
    payment_type TEXT NOT NULL,
    equipment_provided INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    payment_method_id TEXT,
    payment_error TEXT,
    authorization_pending INTEGER NOT NULL DEFAULT 0,
    transfer_id TEXT,
    payout_started_at TEXT,
    override_incomplete_tasks INTEGER NOT NULL DEFAULT 0,
    cancel_reason TEXT,
    canceled_by TEXT,
    refund_rounds INTEGER NOT NULL DEFAULT 0,
    escalated INTEGER NOT NULL DEFAULT 0,
    date_needed TEXT,
    date_posted TEXT,
    date_completed TEXT,
    canceled_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_poster ON jobs(poster_id);
CREATE INDEX IF NOT EXISTS idx_jobs_worker ON jobs(worker_id);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(job_id),
    description TEXT NOT NULL,
    location TEXT,
    position INTEGER NOT NULL,
    bonus_amount INTEGER NOT NULL DEFAULT 0,
    is_completed INTEGER NOT NULL DEFAULT 0,
    completed_by TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id);

CREATE TABLE IF NOT EXISTS applications (
    application_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(job_id),
    worker_id TEXT NOT NULL,
    message TEXT NOT NULL,
    proposed_rate INTEGER,
    expected_duration TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(job_id, worker_id)
);

CREATE TABLE IF NOT EXISTS reviews (
    review_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(job_id),
    reviewer_id TEXT NOT NULL,
    reviewee_id TEXT NOT NULL,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    comment TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(job_id, reviewer_id)
);

CREATE TABLE IF NOT EXISTS escrow_records (
    job_id TEXT PRIMARY KEY REFERENCES jobs(job_id),
    authorized_amount INTEGER NOT NULL DEFAULT 0,
    fee_amount INTEGER NOT NULL DEFAULT 0,
    net_payable INTEGER NOT NULL DEFAULT 0,
    refunded_amount INTEGER NOT NULL DEFAULT 0,
    transferred_amount INTEGER NOT NULL DEFAULT 0,
    fee_waived_amount INTEGER NOT NULL DEFAULT 0,
    hold_id TEXT,
    charge_id TEXT,
    authorized_at TEXT,
    captured_at TEXT,
    transferred_at TEXT,
    refunded_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ledger_events (
    event_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(job_id),
    event_type TEXT NOT NULL,
    amount INTEGER NOT NULL,
    fee_amount INTEGER NOT NULL DEFAULT 0,
    net_amount INTEGER NOT NULL DEFAULT 0,
    reference TEXT,
    dispute_id TEXT,
    idempotency_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_events_job ON ledger_events(job_id);

CREATE TRIGGER IF NOT EXISTS jobs_open_requires_hold_on_insert
BEFORE INSERT ON jobs
WHEN NEW.status = 'open' AND NOT EXISTS (
    SELECT 1 FROM escrow_records
    WHERE job_id = NEW.job_id AND authorized_at IS NOT NULL
)
BEGIN
    SELECT RAISE(ABORT, 'payment_first_violation');
END;

CREATE TRIGGER IF NOT EXISTS jobs_open_requires_hold_on_update
BEFORE UPDATE OF status ON jobs
WHEN NEW.status = 'open' AND NOT EXISTS (
    SELECT 1 FROM escrow_records
    WHERE job_id = NEW.job_id AND authorized_at IS NOT NULL
)
BEGIN
    SELECT RAISE(ABORT, 'payment_first_violation');
END;
"""


class JobStore:
    """SQLite-backed storage for jobs, tasks, applications, reviews and escrow."""

    _JOB_COLUMNS: tuple[str, ...] = (
        "job_id",
        "poster_id",
        "worker_id",
        "title",
        "description",
        "location",
        "required_skills",
        "payment_amount",
        "payment_type",
        "equipment_provided",
        "status",
        "version",
        "payment_method_id",
        "payment_error",
        "authorization_pending",
        "transfer_id",
        "payout_started_at",
        "override_incomplete_tasks",
        "cancel_reason",
        "canceled_by",
        "refund_rounds",
        "escalated",
        "date_needed",
        "date_posted",
        "date_completed",
        "canceled_at",
        "created_at",
        "updated_at",
    )
    # Columns callers may never set directly.
    _JOB_IMMUTABLE_COLUMNS: frozenset[str] = frozenset(
        {"job_id", "poster_id", "version", "created_at"}
    )
    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "job_id",
        "description",
        "location",
        "position",
        "bonus_amount",
        "is_completed",
        "completed_by",
        "completed_at",
        "created_at",
    )
    _APPLICATION_COLUMNS: tuple[str, ...] = (
        "application_id",
        "job_id",
        "worker_id",
        "message",
        "proposed_rate",
        "expected_duration",
        "status",
        "created_at",
        "updated_at",
    )
    _REVIEW_COLUMNS: tuple[str, ...] = (
        "review_id",
        "job_id",
        "reviewer_id",
        "reviewee_id",
        "rating",
        "comment",
        "created_at",
    )
    _ESCROW_COLUMNS: tuple[str, ...] = (
        "job_id",
        "authorized_amount",
        "fee_amount",
        "net_payable",
        "refunded_amount",
        "transferred_amount",
        "fee_waived_amount",
        "hold_id",
        "charge_id",
        "authorized_at",
        "captured_at",
        "transferred_at",
        "refunded_at",
        "created_at",
    )
    _LEDGER_EVENT_COLUMNS: tuple[str, ...] = (
        "event_id",
        "job_id",
        "event_type",
        "amount",
        "fee_amount",
        "net_amount",
        "reference",
        "dispute_id",
        "idempotency_key",
        "created_at",
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        with self._lock:
            self._db.executescript(_SCHEMA)

    @staticmethod
    def _select(table: str, columns: tuple[str, ...]) -> str:
        return f"SELECT {', '.join(columns)} FROM {table}"  # nosec B608

    @staticmethod
    def _insert(table: str, columns: tuple[str, ...]) -> str:
        placeholders = ", ".join("?" for _ in columns)
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"  # nosec B608

    @staticmethod
    def _row(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
        return {column: row[column] for column in columns}

    def _row_to_job(self, row: sqlite3.Row) -> dict[str, Any]:
        job = self._row(row, self._JOB_COLUMNS)
        job["required_skills"] = json.loads(job["required_skills"])
        return job

    def _rollback(self) -> None:
        with contextlib.suppress(sqlite3.Error):
            self._db.execute("ROLLBACK")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def insert_job(self, job_data: dict[str, Any], tasks: list[dict[str, Any]]) -> None:
        """Insert a job with its initial tasks and an empty escrow record."""
        values = []
        for column in self._JOB_COLUMNS:
            value = job_data[column]
            if column == "required_skills":
                value = json.dumps(value)
            values.append(value)

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(self._insert("jobs", self._JOB_COLUMNS), values)
                self._db.execute(
                    "INSERT INTO escrow_records (job_id, created_at) VALUES (?, ?)",
                    (job_data["job_id"], job_data["created_at"]),
                )
                for task in tasks:
                    self._db.execute(
                        self._insert("tasks", self._TASK_COLUMNS),
                        tuple(task[column] for column in self._TASK_COLUMNS),
                    )
                self._db.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                self._rollback()
                if "payment_first_violation" in str(exc):
                    raise PaymentFirstViolationError(str(exc)) from exc
                raise
            except Exception:
                self._rollback()
                raise

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        """Fetch a job by ID."""
        with self._lock:
            row = self._db.execute(
                self._select("jobs", self._JOB_COLUMNS) + " WHERE job_id = ?", (job_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_job(row)

    def update_job(
        self,
        job_id: str,
        updates: dict[str, Any],
        *,
        expected_version: int,
        expected_status: str | None,
    ) -> int:
        """
        Compare-and-set update of a job row.

        The write only lands when the stored version equals ``expected_version``
        (and the status equals ``expected_status`` when given). Every
        successful write advances the version by one.

        Returns:
            Number of affected rows (0 or 1)

        Raises:
            PaymentFirstViolationError: if the write would open a job without a hold
        """
        if any(
            column not in self._JOB_COLUMNS or column in self._JOB_IMMUTABLE_COLUMNS
            for column in updates
        ):
            msg = "Attempted to update unknown or immutable job column"
            raise ValueError(msg)

        params: list[object] = []
        assignments: list[str] = []
        for column, value in updates.items():
            assignments.append(f"{column} = ?")
            params.append(json.dumps(value) if column == "required_skills" else value)
        assignments.append("version = version + 1")

        set_clause = ", ".join(assignments)
        query = "UPDATE jobs SET " + set_clause + " WHERE job_id = ? AND version = ?"  # nosec B608
        params.extend([job_id, expected_version])
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            try:
                cursor = self._db.execute(query, params)
            except sqlite3.IntegrityError as exc:
                if "payment_first_violation" in str(exc):
                    raise PaymentFirstViolationError(str(exc)) from exc
                raise
        return int(cursor.rowcount)

    def list_jobs(
        self,
        *,
        status: str | None,
        poster_id: str | None,
        worker_id: str | None,
        payment_type: str | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List jobs with optional filters, newest first."""
        query = self._select("jobs", self._JOB_COLUMNS)
        clauses: list[str] = []
        params: list[object] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if poster_id is not None:
            clauses.append("poster_id = ?")
            params.append(poster_id)
        if worker_id is not None:
            clauses.append("worker_id = ?")
            params.append(worker_id)
        if payment_type is not None:
            clauses.append("payment_type = ?")
            params.append(payment_type)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        """Count jobs grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def count_payment_backlog(self) -> dict[str, int]:
        """Jobs waiting on the processor, by the operation they wait for."""
        with self._lock:
            row = self._db.execute(
                "SELECT "
                "COALESCE(SUM(status = 'pending_payment' AND authorization_pending = 1), 0), "
                "COALESCE(SUM(status = 'payout_pending'), 0), "
                "COALESCE(SUM(status = 'cancel_pending'), 0), "
                "COALESCE(SUM(escalated = 1), 0) "
                "FROM jobs"
            ).fetchone()
        return {
            "authorizations": int(row[0]),
            "payouts": int(row[1]),
            "refunds": int(row[2]),
            "escalated": int(row[3]),
        }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a task row."""
        with self._lock:
            self._db.execute(
                self._insert("tasks", self._TASK_COLUMNS),
                tuple(task_data[column] for column in self._TASK_COLUMNS),
            )

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._lock:
            row = self._db.execute(
                self._select("tasks", self._TASK_COLUMNS) + " WHERE task_id = ?", (task_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row(row, self._TASK_COLUMNS)

    def list_tasks(self, job_id: str) -> list[dict[str, Any]]:
        """Fetch all tasks of a job in checklist order."""
        with self._lock:
            rows = self._db.execute(
                self._select("tasks", self._TASK_COLUMNS) + " WHERE job_id = ? ORDER BY position",
                (job_id,),
            ).fetchall()
        return [self._row(row, self._TASK_COLUMNS) for row in rows]

    def next_task_position(self, job_id: str) -> int:
        """Return the position for a task appended to a job's checklist."""
        with self._lock:
            row = self._db.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM tasks WHERE job_id = ?", (job_id,)
            ).fetchone()
        return int(row[0])

    def delete_task(self, task_id: str) -> int:
        """Delete a task and return the number of removed rows."""
        with self._lock:
            cursor = self._db.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
        return int(cursor.rowcount)

    def mark_task_completed(self, task_id: str, worker_id: str, completed_at: str) -> int:
        """Mark an incomplete task completed. Returns 0 if it already was."""
        with self._lock:
            cursor = self._db.execute(
                "UPDATE tasks SET is_completed = 1, completed_by = ?, completed_at = ? "
                "WHERE task_id = ? AND is_completed = 0",
                (worker_id, completed_at, task_id),
            )
        return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def insert_application(self, application_data: dict[str, Any]) -> None:
        """Insert an application row."""
        with self._lock:
            try:
                self._db.execute(
                    self._insert("applications", self._APPLICATION_COLUMNS),
                    tuple(application_data[column] for column in self._APPLICATION_COLUMNS),
                )
            except sqlite3.IntegrityError as exc:
                if "unique" in str(exc).lower():
                    raise DuplicateApplicationError(
                        "This worker already applied to this job"
                    ) from exc
                raise

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        """Fetch an application by ID."""
        with self._lock:
            row = self._db.execute(
                self._select("applications", self._APPLICATION_COLUMNS)
                + " WHERE application_id = ?",
                (application_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row(row, self._APPLICATION_COLUMNS)

    def get_application_for_worker(self, job_id: str, worker_id: str) -> dict[str, Any] | None:
        """Fetch the single application a worker holds for a job."""
        with self._lock:
            row = self._db.execute(
                self._select("applications", self._APPLICATION_COLUMNS)
                + " WHERE job_id = ? AND worker_id = ?",
                (job_id, worker_id),
            ).fetchone()
        if row is None:
            return None
        return self._row(row, self._APPLICATION_COLUMNS)

    def list_applications(self, job_id: str) -> list[dict[str, Any]]:
        """Fetch all applications of a job sorted by submission time."""
        with self._lock:
            rows = self._db.execute(
                self._select("applications", self._APPLICATION_COLUMNS)
                + " WHERE job_id = ? ORDER BY created_at",
                (job_id,),
            ).fetchall()
        return [self._row(row, self._APPLICATION_COLUMNS) for row in rows]

    def update_application(
        self,
        application_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update application columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0
        if any(column not in self._APPLICATION_COLUMNS for column in updates):
            msg = "Attempted to update unknown application column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())
        query = "UPDATE applications SET " + set_clause + " WHERE application_id = ?"  # nosec B608
        params.append(application_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def assign_worker(
        self,
        job_id: str,
        application_id: str,
        worker_id: str,
        *,
        expected_version: int,
        timestamp: str,
    ) -> bool:
        """
        Assign a job to the worker behind an accepted application.

        In one transaction: move the job open -> assigned (version-checked),
        accept the application, and reject every other pending application.

        Returns:
            True when the assignment landed, False when the job version or
            the application status had moved on.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                job_cursor = self._db.execute(
                    "UPDATE jobs SET status = 'assigned', worker_id = ?, updated_at = ?, "
                    "version = version + 1 "
                    "WHERE job_id = ? AND version = ? AND status = 'open'",
                    (worker_id, timestamp, job_id, expected_version),
                )
                if job_cursor.rowcount != 1:
                    self._rollback()
                    return False
                application_cursor = self._db.execute(
                    "UPDATE applications SET status = 'accepted', updated_at = ? "
                    "WHERE application_id = ? AND job_id = ? AND status = 'pending'",
                    (timestamp, application_id, job_id),
                )
                if application_cursor.rowcount != 1:
                    self._rollback()
                    return False
                self._db.execute(
                    "UPDATE applications SET status = 'rejected', updated_at = ? "
                    "WHERE job_id = ? AND application_id != ? AND status = 'pending'",
                    (timestamp, job_id, application_id),
                )
                self._db.execute("COMMIT")
            except Exception:
                self._rollback()
                raise
        return True

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def insert_review(self, review_data: dict[str, Any]) -> None:
        """Insert a review row."""
        with self._lock:
            try:
                self._db.execute(
                    self._insert("reviews", self._REVIEW_COLUMNS),
                    tuple(review_data[column] for column in self._REVIEW_COLUMNS),
                )
            except sqlite3.IntegrityError as exc:
                if "unique" in str(exc).lower():
                    raise DuplicateReviewError("This reviewer already reviewed this job") from exc
                raise

    def list_reviews(self, job_id: str) -> list[dict[str, Any]]:
        """Fetch all reviews of a job."""
        with self._lock:
            rows = self._db.execute(
                self._select("reviews", self._REVIEW_COLUMNS)
                + " WHERE job_id = ? ORDER BY created_at",
                (job_id,),
            ).fetchall()
        return [self._row(row, self._REVIEW_COLUMNS) for row in rows]

    # ------------------------------------------------------------------
    # Escrow records and ledger events
    # ------------------------------------------------------------------

    def get_escrow(self, job_id: str) -> dict[str, Any] | None:
        """Fetch the escrow record of a job."""
        with self._lock:
            row = self._db.execute(
                self._select("escrow_records", self._ESCROW_COLUMNS) + " WHERE job_id = ?",
                (job_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row(row, self._ESCROW_COLUMNS)

    def list_ledger_events(self, job_id: str) -> list[dict[str, Any]]:
        """Fetch the append-only event history of a job in insertion order."""
        with self._lock:
            rows = self._db.execute(
                self._select("ledger_events", self._LEDGER_EVENT_COLUMNS)
                + " WHERE job_id = ? ORDER BY rowid",
                (job_id,),
            ).fetchall()
        return [self._row(row, self._LEDGER_EVENT_COLUMNS) for row in rows]

    def append_ledger_event(
        self,
        event: dict[str, Any],
        apply: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> bool:
        """
        Append a ledger event and fold it into the escrow record atomically.

        ``apply`` receives the current escrow record and returns the column
        updates the event implies. It may raise to abort the append.

        Returns:
            True when the event was recorded, False when an event with the
            same idempotency key already exists.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                try:
                    self._db.execute(
                        self._insert("ledger_events", self._LEDGER_EVENT_COLUMNS),
                        tuple(event[column] for column in self._LEDGER_EVENT_COLUMNS),
                    )
                except sqlite3.IntegrityError as exc:
                    if "idempotency_key" in str(exc):
                        self._rollback()
                        return False
                    raise

                row = self._db.execute(
                    self._select("escrow_records", self._ESCROW_COLUMNS) + " WHERE job_id = ?",
                    (event["job_id"],),
                ).fetchone()
                if row is None:
                    msg = f"No escrow record for job {event['job_id']}"
                    raise LookupError(msg)

                updates = apply(self._row(row, self._ESCROW_COLUMNS))
                if updates:
                    set_clause = ", ".join(f"{column} = ?" for column in updates)
                    query = (  # nosec B608
                        "UPDATE escrow_records SET " + set_clause + " WHERE job_id = ?"
                    )
                    self._db.execute(
                        query,
                        [*updates.values(), event["job_id"]],
                    )
                self._db.execute("COMMIT")
            except Exception:
                self._rollback()
                raise
        return True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
