"""SQLite-backed dispute storage."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class DuplicateDisputeError(Exception):
    """Raised when a job already has an unresolved dispute."""


class DisputeStore:
    """SQLite-backed dispute storage with thread-safe access."""

    _COLUMNS: tuple[str, ...] = (
        "dispute_id",
        "job_id",
        "reported_by",
        "dispute_type",
        "description",
        "expected_amount",
        "evidence",
        "status",
        "outcome",
        "resolution_amount",
        "resolution_notes",
        "processor_dispute_id",
        "created_at",
        "reviewed_at",
        "resolved_at",
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS disputes (
                    dispute_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    reported_by TEXT NOT NULL,
                    dispute_type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    expected_amount INTEGER,
                    evidence TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'open',
                    outcome TEXT,
                    resolution_amount INTEGER,
                    resolution_notes TEXT,
                    processor_dispute_id TEXT,
                    created_at TEXT NOT NULL,
                    reviewed_at TEXT,
                    resolved_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_one_unresolved_per_job
                ON disputes(job_id) WHERE status != 'resolved';
                """
            )

    def _row_to_dispute(self, row: sqlite3.Row) -> dict[str, Any]:
        dispute = {column: row[column] for column in self._COLUMNS}
        dispute["evidence"] = json.loads(dispute["evidence"])
        return dispute

    def insert_dispute(self, dispute_data: dict[str, Any]) -> None:
        """Insert a dispute; at most one unresolved dispute may exist per job."""
        values = [
            json.dumps(dispute_data[column]) if column == "evidence" else dispute_data[column]
            for column in self._COLUMNS
        ]
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        with self._lock:
            try:
                self._db.execute(
                    f"INSERT INTO disputes ({', '.join(self._COLUMNS)}) "  # nosec B608
                    f"VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                if "unique" in str(exc).lower():
                    raise DuplicateDisputeError(
                        f"Job {dispute_data['job_id']} already has an open dispute"
                    ) from exc
                raise

    def get_dispute(self, dispute_id: str) -> dict[str, Any] | None:
        """Fetch a dispute by ID."""
        with self._lock:
            row = self._db.execute(
                f"SELECT {', '.join(self._COLUMNS)} FROM disputes "  # nosec B608
                "WHERE dispute_id = ?",
                (dispute_id,),
            ).fetchone()
        return None if row is None else self._row_to_dispute(row)

    def list_disputes_for_job(self, job_id: str) -> list[dict[str, Any]]:
        """Fetch every dispute ever opened against a job."""
        with self._lock:
            rows = self._db.execute(
                f"SELECT {', '.join(self._COLUMNS)} FROM disputes "  # nosec B608
                "WHERE job_id = ? ORDER BY created_at",
                (job_id,),
            ).fetchall()
        return [self._row_to_dispute(row) for row in rows]

    def update_dispute(
        self,
        dispute_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
    ) -> int:
        """Update dispute columns and return the number of affected rows."""
        if len(updates) == 0:
            return 0
        if any(column not in self._COLUMNS or column == "dispute_id" for column in updates):
            msg = "Attempted to update unknown dispute column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())
        query = "UPDATE disputes SET " + set_clause + " WHERE dispute_id = ?"  # nosec B608
        params.append(dispute_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)

        with self._lock:
            cursor = self._db.execute(query, params)
        return int(cursor.rowcount)

    def delete_dispute(self, dispute_id: str) -> None:
        """Remove a dispute that never took effect."""
        with self._lock:
            self._db.execute("DELETE FROM disputes WHERE dispute_id = ?", (dispute_id,))

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
