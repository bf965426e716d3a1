"""SQLite-backed storage for payment methods, payout accounts and processor bookkeeping."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any

_SCHEMA = """
CREATE TABLE IF NOT EXISTS payment_methods (
    method_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    setup_intent_id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    brand TEXT,
    last4 TEXT,
    exp_month INTEGER,
    exp_year INTEGER,
    is_default INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_methods_user ON payment_methods(user_id);

CREATE TABLE IF NOT EXISTS payout_accounts (
    user_id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    received_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_attempts (
    subject_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    epoch INTEGER NOT NULL,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (subject_id, operation)
);
"""

ATTEMPT_IN_FLIGHT = "in_flight"
ATTEMPT_SUCCEEDED = "succeeded"
ATTEMPT_FAILED_TRANSIENT = "failed_transient"
ATTEMPT_FAILED_PERMANENT = "failed_permanent"


class PaymentStore:
    """SQLite-backed storage owned by the payment orchestrator."""

    _METHOD_COLUMNS: tuple[str, ...] = (
        "method_id",
        "user_id",
        "setup_intent_id",
        "status",
        "brand",
        "last4",
        "exp_month",
        "exp_year",
        "is_default",
        "created_at",
        "updated_at",
    )
    _METHOD_SELECT_SQL = (
        "SELECT method_id, user_id, setup_intent_id, status, brand, last4, exp_month, "
        "exp_year, is_default, created_at, updated_at FROM payment_methods"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        with self._lock:
            self._db.executescript(_SCHEMA)

    def _row_to_method(self, row: sqlite3.Row) -> dict[str, Any]:
        method = {column: row[column] for column in self._METHOD_COLUMNS}
        method["is_default"] = bool(method["is_default"])
        return method

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    def insert_payment_method(self, method_data: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a payment method. The user's first method becomes the default.

        Returns the stored row.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                existing = self._db.execute(
                    "SELECT COUNT(*) FROM payment_methods WHERE user_id = ?",
                    (method_data["user_id"],),
                ).fetchone()
                is_default = int(existing[0]) == 0
                self._db.execute(
                    "INSERT INTO payment_methods (method_id, user_id, setup_intent_id, status, "
                    "brand, last4, exp_month, exp_year, is_default, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        method_data["method_id"],
                        method_data["user_id"],
                        method_data["setup_intent_id"],
                        method_data["status"],
                        method_data["brand"],
                        method_data["last4"],
                        method_data["exp_month"],
                        method_data["exp_year"],
                        int(is_default),
                        method_data["created_at"],
                        method_data["updated_at"],
                    ),
                )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        stored = self.get_payment_method(method_data["method_id"])
        if stored is None:
            msg = "Payment method vanished after insert"
            raise RuntimeError(msg)
        return stored

    def get_payment_method(self, method_id: str) -> dict[str, Any] | None:
        """Fetch a payment method by processor ID."""
        with self._lock:
            row = self._db.execute(
                self._METHOD_SELECT_SQL + " WHERE method_id = ?", (method_id,)
            ).fetchone()
        return None if row is None else self._row_to_method(row)

    def get_payment_method_by_setup_intent(self, setup_intent_id: str) -> dict[str, Any] | None:
        """Fetch the payment method registered through a setup intent."""
        with self._lock:
            row = self._db.execute(
                self._METHOD_SELECT_SQL + " WHERE setup_intent_id = ?", (setup_intent_id,)
            ).fetchone()
        return None if row is None else self._row_to_method(row)

    def get_default_payment_method(self, user_id: str) -> dict[str, Any] | None:
        """Fetch the user's default payment method."""
        with self._lock:
            row = self._db.execute(
                self._METHOD_SELECT_SQL + " WHERE user_id = ? AND is_default = 1", (user_id,)
            ).fetchone()
        return None if row is None else self._row_to_method(row)

    def list_payment_methods(self, user_id: str) -> list[dict[str, Any]]:
        """Fetch all payment methods of a user."""
        with self._lock:
            rows = self._db.execute(
                self._METHOD_SELECT_SQL + " WHERE user_id = ? ORDER BY created_at", (user_id,)
            ).fetchall()
        return [self._row_to_method(row) for row in rows]

    def update_payment_method(self, method_id: str, updates: dict[str, Any]) -> int:
        """Update display or status columns of a payment method."""
        if any(
            column not in self._METHOD_COLUMNS or column in {"method_id", "user_id", "is_default"}
            for column in updates
        ):
            msg = "Attempted to update unknown or protected payment method column"
            raise ValueError(msg)
        set_clause = ", ".join(f"{column} = ?" for column in updates)
        with self._lock:
            cursor = self._db.execute(
                "UPDATE payment_methods SET " + set_clause + " WHERE method_id = ?",  # nosec B608
                [*updates.values(), method_id],
            )
        return int(cursor.rowcount)

    def set_default_payment_method(self, user_id: str, method_id: str) -> None:
        """Make one method the user's only default."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                self._db.execute(
                    "UPDATE payment_methods SET is_default = (method_id = ?) WHERE user_id = ?",
                    (method_id, user_id),
                )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    def delete_payment_method(self, user_id: str, method_id: str) -> None:
        """Delete a method, promoting the oldest remaining one if it was the default."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT is_default FROM payment_methods WHERE method_id = ? AND user_id = ?",
                    (method_id, user_id),
                ).fetchone()
                self._db.execute(
                    "DELETE FROM payment_methods WHERE method_id = ? AND user_id = ?",
                    (method_id, user_id),
                )
                if row is not None and row["is_default"]:
                    self._db.execute(
                        "UPDATE payment_methods SET is_default = 1 WHERE method_id = ("
                        "SELECT method_id FROM payment_methods WHERE user_id = ? "
                        "ORDER BY created_at LIMIT 1)",
                        (user_id,),
                    )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Payout accounts
    # ------------------------------------------------------------------

    def upsert_payout_account(self, user_id: str, account_id: str, updated_at: str) -> None:
        """Register or replace a worker's payout account."""
        with self._lock:
            self._db.execute(
                "INSERT INTO payout_accounts (user_id, account_id, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(user_id) DO UPDATE SET account_id = excluded.account_id, "
                "updated_at = excluded.updated_at",
                (user_id, account_id, updated_at),
            )

    def get_payout_account(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a worker's payout account."""
        with self._lock:
            row = self._db.execute(
                "SELECT user_id, account_id, updated_at FROM payout_accounts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return {"user_id": row["user_id"], "account_id": row["account_id"], "updated_at": row[2]}

    # ------------------------------------------------------------------
    # Webhook deduplication
    # ------------------------------------------------------------------

    def claim_event(self, event_id: str, event_type: str, received_at: str) -> bool:
        """Record a processor event id. Returns False if it was already claimed."""
        with self._lock:
            try:
                self._db.execute(
                    "INSERT INTO processed_events (event_id, event_type, received_at) "
                    "VALUES (?, ?, ?)",
                    (event_id, event_type, received_at),
                )
            except sqlite3.IntegrityError:
                return False
        return True

    def release_event(self, event_id: str) -> None:
        """Forget a claimed event so a redelivery is processed again."""
        with self._lock:
            self._db.execute("DELETE FROM processed_events WHERE event_id = ?", (event_id,))

    # ------------------------------------------------------------------
    # Idempotency epochs
    # ------------------------------------------------------------------

    def begin_attempt(
        self,
        subject_id: str,
        operation: str,
        *,
        new_epoch: bool,
        timestamp: str,
    ) -> int:
        """
        Mark an operation in flight and return the epoch its idempotency key uses.

        The epoch stays the same across transient failures so a retried call
        reuses its key. It advances after a permanent failure, or when the
        caller asks for a fresh attempt.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT epoch, status FROM payment_attempts "
                    "WHERE subject_id = ? AND operation = ?",
                    (subject_id, operation),
                ).fetchone()
                if row is None:
                    epoch = 1
                    self._db.execute(
                        "INSERT INTO payment_attempts (subject_id, operation, epoch, status, "
                        "updated_at) VALUES (?, ?, ?, ?, ?)",
                        (subject_id, operation, epoch, ATTEMPT_IN_FLIGHT, timestamp),
                    )
                else:
                    epoch = int(row["epoch"])
                    if new_epoch or row["status"] == ATTEMPT_FAILED_PERMANENT:
                        epoch += 1
                    self._db.execute(
                        "UPDATE payment_attempts SET epoch = ?, status = ?, updated_at = ? "
                        "WHERE subject_id = ? AND operation = ?",
                        (epoch, ATTEMPT_IN_FLIGHT, timestamp, subject_id, operation),
                    )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return epoch

    def finish_attempt(self, subject_id: str, operation: str, status: str, timestamp: str) -> None:
        """Record the outcome of the current epoch."""
        with self._lock:
            self._db.execute(
                "UPDATE payment_attempts SET status = ?, updated_at = ? "
                "WHERE subject_id = ? AND operation = ?",
                (status, timestamp, subject_id, operation),
            )

    def get_attempt(self, subject_id: str, operation: str) -> dict[str, Any] | None:
        """Fetch the attempt bookkeeping of an operation."""
        with self._lock:
            row = self._db.execute(
                "SELECT subject_id, operation, epoch, status, updated_at FROM payment_attempts "
                "WHERE subject_id = ? AND operation = ?",
                (subject_id, operation),
            ).fetchone()
        if row is None:
            return None
        return {column: row[column] for column in row.keys()}  # noqa: SIM118

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
