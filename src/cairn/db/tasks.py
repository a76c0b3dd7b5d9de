"""Durable ingestion task queue.

Tasks live in the ``tasks`` table. Every state transition is a single
conditional ``UPDATE`` inside ``BEGIN IMMEDIATE``; ``claim_next`` picks and
flips a row in one statement so two workers on separate connections can never
both receive the same task.
"""

from __future__ import annotations

import logging
import random
import sqlite3
import threading
import time
import uuid

from cairn.config import QueueCfg
from cairn.db.connection import synchronized, write_transaction
from cairn.db.models import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    IngestionTask,
    Payload,
    TaskStatus,
    payload_from_json,
    payload_to_json,
    status_from_row,
)
from cairn.errors import LeaseLost, NotFoundError, OwnershipError

logger = logging.getLogger(__name__)

LOST_AT_CAP = "Worker lost the task and the attempt cap is reached"


def backoff_delay(attempt: int, cfg: QueueCfg, rng: random.Random | None = None) -> float:
    """Seconds to wait before retrying after failed attempt number *attempt*.

    ``base * 2**min(attempt-1, cap)``, clamped to ``retry_max_delay``, plus up
    to ``jitter`` of that delay at random.
    """
    exponent = min(max(attempt - 1, 0), cfg.backoff_cap_exponent)
    delay = min(cfg.retry_base_delay * (2**exponent), cfg.retry_max_delay)
    if cfg.jitter > 0 and delay > 0:
        delay += (rng or random).uniform(0, delay * cfg.jitter)
    return delay


class TaskQueue:
    """Persistent queue of IngestionTask records.

    Args:
        conn: Open connection (schema initialised). One queue per connection;
            concurrent workers should each open their own.
        cfg: Retry policy and lease length.
    """

    def __init__(self, conn: sqlite3.Connection, cfg: QueueCfg | None = None) -> None:
        self._conn = conn
        self._cfg = cfg or QueueCfg()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @synchronized
    def enqueue(self, payload: Payload, owner: str) -> str:
        """Persist a new Pending task and return its id."""
        task_id = uuid.uuid4().hex
        with write_transaction(self._conn) as conn:
            conn.execute(
                "INSERT INTO tasks (id, owner, payload, status) VALUES (?, ?, ?, ?)",
                (task_id, owner, payload_to_json(payload), STATUS_PENDING),
            )
        logger.info("Task enqueued", extra={"task_id": task_id, "owner": owner})
        return task_id

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    @synchronized
    def claim_next(
        self, worker_id: str | None = None, now: float | None = None
    ) -> IngestionTask | None:
        """Atomically move the oldest eligible task to InProgress(attempts + 1).

        Eligible: Pending with no retry time or a retry time that has passed,
        or InProgress whose lease has expired (its worker died). An expired
        task that already used its last attempt becomes Error instead.
        """
        now = time.time() if now is None else now
        params = {
            "in_progress": STATUS_IN_PROGRESS,
            "pending": STATUS_PENDING,
            "error": STATUS_ERROR,
            "now": now,
            "max": self._cfg.max_attempts,
            "lease": now + self._cfg.lease_seconds,
            "worker": worker_id,
            "lost": LOST_AT_CAP,
        }
        with write_transaction(self._conn) as conn:
            abandoned = conn.execute(
                """
                UPDATE tasks SET
                    status = :error,
                    error_message = :lost,
                    lease_expires_at = NULL,
                    updated_at = datetime('now')
                WHERE status = :in_progress AND lease_expires_at < :now AND attempts >= :max
                RETURNING id, attempts
                """,
                params,
            ).fetchall()
            row = conn.execute(
                """
                UPDATE tasks SET
                    status = :in_progress,
                    attempts = attempts + 1,
                    retry_at = NULL,
                    lease_expires_at = :lease,
                    worker_id = :worker,
                    updated_at = datetime('now')
                WHERE id = (
                    SELECT id FROM tasks
                    WHERE (status = :pending AND (retry_at IS NULL OR retry_at <= :now))
                       OR (status = :in_progress AND lease_expires_at < :now)
                    ORDER BY rowid
                    LIMIT 1
                )
                RETURNING *
                """,
                params,
            ).fetchone()
        for lost in abandoned:
            logger.warning(
                "Task failed permanently: %s",
                LOST_AT_CAP,
                extra={"task_id": lost["id"], "attempt": lost["attempts"]},
            )
        if row is None:
            return None
        task = _row_to_task(row)
        logger.info(
            "Task claimed",
            extra={"task_id": task.id, "attempt": task.attempts, "owner": task.owner},
        )
        return task

    @synchronized
    def heartbeat(
        self, task_id: str, worker_id: str | None = None, now: float | None = None
    ) -> bool:
        """Extend the lease of an InProgress task.

        Returns:
            False if the task is no longer in progress or, when *worker_id* is
            given, is now held by another worker.
        """
        now = time.time() if now is None else now
        holder, args = _held_by(worker_id)
        with write_transaction(self._conn) as conn:
            cur = conn.execute(
                f"UPDATE tasks SET lease_expires_at = ? WHERE id = ? AND status = ?{holder}",
                (now + self._cfg.lease_seconds, task_id, STATUS_IN_PROGRESS, *args),
            )
        return cur.rowcount > 0

    @synchronized
    def complete(self, task_id: str, worker_id: str | None = None) -> None:
        """Mark an InProgress task Completed.

        Raises:
            LeaseLost: *worker_id* no longer holds the task.
        """
        holder, args = _held_by(worker_id)
        with write_transaction(self._conn) as conn:
            cur = conn.execute(
                f"""
                UPDATE tasks SET status = ?, error_message = NULL, retry_at = NULL,
                    lease_expires_at = NULL, updated_at = datetime('now')
                WHERE id = ? AND status = ?{holder}
                """,
                (STATUS_COMPLETED, task_id, STATUS_IN_PROGRESS, *args),
            )
        if cur.rowcount == 0:
            if worker_id is not None:
                raise LeaseLost(f"Task '{task_id}' is no longer held by {worker_id}")
            logger.warning("complete() on a task that is not in progress: %s", task_id)

    @synchronized
    def fail(
        self,
        task_id: str,
        message: str,
        retryable: bool,
        now: float | None = None,
        worker_id: str | None = None,
    ) -> TaskStatus:
        """Record a failed attempt.

        A retryable failure under the attempt cap goes back to Pending with a
        backoff retry time. Otherwise the task becomes Error(message).

        Returns:
            The task's new status.

        Raises:
            LeaseLost: *worker_id* no longer holds the task.
            NotFoundError: The task is not in progress.
        """
        now = time.time() if now is None else now
        holder, args = _held_by(worker_id)
        with write_transaction(self._conn) as conn:
            row = conn.execute(
                f"SELECT attempts FROM tasks WHERE id = ? AND status = ?{holder}",
                (task_id, STATUS_IN_PROGRESS, *args),
            ).fetchone()
            if row is None:
                if worker_id is not None:
                    raise LeaseLost(f"Task '{task_id}' is no longer held by {worker_id}")
                raise NotFoundError(f"Task '{task_id}' is not in progress")
            attempts = row["attempts"]

            if retryable and attempts < self._cfg.max_attempts:
                retry_at = now + backoff_delay(attempts, self._cfg)
                conn.execute(
                    """
                    UPDATE tasks SET status = ?, error_message = ?, retry_at = ?,
                        lease_expires_at = NULL, worker_id = NULL, updated_at = datetime('now')
                    WHERE id = ?
                    """,
                    (STATUS_PENDING, message, retry_at, task_id),
                )
                new_label = STATUS_PENDING
            else:
                retry_at = None
                conn.execute(
                    """
                    UPDATE tasks SET status = ?, error_message = ?, retry_at = NULL,
                        lease_expires_at = NULL, updated_at = datetime('now')
                    WHERE id = ?
                    """,
                    (STATUS_ERROR, message, task_id),
                )
                new_label = STATUS_ERROR

        extra = {"task_id": task_id, "attempt": attempts}
        if new_label == STATUS_PENDING:
            logger.warning(
                "Attempt %d failed, retrying in %.1fs: %s",
                attempts,
                retry_at - now,
                message,
                extra=extra,
            )
        else:
            logger.warning("Task failed permanently: %s", message, extra=extra)
        return status_from_row(new_label, attempts, message, retry_at)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @synchronized
    def cancel(self, task_id: str, owner: str) -> bool:
        """Cancel a task.

        Pending and finished tasks are removed at once. An InProgress task is
        only flagged; the worker drops it after its current stage. Results
        already persisted are kept in either case.

        Returns:
            True if the task was removed, False if cancellation is pending.

        Raises:
            NotFoundError: Unknown task id.
            OwnershipError: The task belongs to another owner.
        """
        with write_transaction(self._conn) as conn:
            row = conn.execute(
                "SELECT owner, status FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Task '{task_id}' not found")
            if row["owner"] != owner:
                raise OwnershipError(f"Task '{task_id}' belongs to another owner")
            if row["status"] == STATUS_IN_PROGRESS:
                conn.execute(
                    "UPDATE tasks SET cancel_requested = 1, updated_at = datetime('now') WHERE id = ?",
                    (task_id,),
                )
                removed = False
            else:
                conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                removed = True
        logger.info(
            "Task %s", "cancelled" if removed else "cancellation requested",
            extra={"task_id": task_id, "owner": owner},
        )
        return removed

    @synchronized
    def is_cancel_requested(self, task_id: str) -> bool:
        """True if the task was flagged for cancellation or no longer exists."""
        row = self._conn.execute(
            "SELECT cancel_requested FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        return row is None or bool(row["cancel_requested"])

    @synchronized
    def drop(self, task_id: str, worker_id: str | None = None) -> None:
        """Delete a task whose cancellation the worker has honoured."""
        holder, args = _held_by(worker_id)
        with write_transaction(self._conn) as conn:
            conn.execute(f"DELETE FROM tasks WHERE id = ?{holder}", (task_id, *args))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @synchronized
    def get(self, task_id: str, owner: str) -> IngestionTask:
        row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Task '{task_id}' not found")
        if row["owner"] != owner:
            raise OwnershipError(f"Task '{task_id}' belongs to another owner")
        return _row_to_task(row)

    @synchronized
    def list_active(self, owner: str) -> list[IngestionTask]:
        """Non-terminal tasks of *owner* in submission order."""
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE owner = ? AND status IN (?, ?) ORDER BY rowid",
            (owner, STATUS_PENDING, STATUS_IN_PROGRESS),
        ).fetchall()
        return [_row_to_task(r) for r in rows]

    @synchronized
    def list_recent(self, owner: str, limit: int = 20) -> list[IngestionTask]:
        """Most recently updated tasks of *owner*, finished ones included."""
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE owner = ? ORDER BY updated_at DESC, rowid DESC LIMIT ?",
            (owner, limit),
        ).fetchall()
        return [_row_to_task(r) for r in rows]

    @synchronized
    def pending_count(self, now: float | None = None) -> int:
        """Tasks a worker could claim right now (all owners)."""
        now = time.time() if now is None else now
        return self._conn.execute(
            """
            SELECT COUNT(*) FROM tasks
            WHERE (status = ? AND (retry_at IS NULL OR retry_at <= ?))
               OR (status = ? AND lease_expires_at < ? AND attempts < ?)
            """,
            (STATUS_PENDING, now, STATUS_IN_PROGRESS, now, self._cfg.max_attempts),
        ).fetchone()[0]


def _held_by(worker_id: str | None) -> tuple[str, tuple[str, ...]]:
    """SQL suffix restricting an update to the worker that holds the lease."""
    if worker_id is None:
        return "", ()
    return " AND worker_id = ?", (worker_id,)


def _row_to_task(row: sqlite3.Row) -> IngestionTask:
    return IngestionTask(
        id=row["id"],
        owner=row["owner"],
        payload=payload_from_json(row["payload"]),
        status=status_from_row(
            row["status"], row["attempts"], row["error_message"], row["retry_at"]
        ),
        attempts=row["attempts"],
        cancel_requested=bool(row["cancel_requested"]),
        worker_id=row["worker_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
