"""SQLite implementations of JobStore and Rescheduler.

This module provides the local-first, crash-safe persistence for relay jobs:
- sqlite-utils for table access and JSON-column round trips
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic pass claims
- Exponential backoff retry for database lock handling
- One scheduled pass per job, enforced by the primary key
"""

import json
import sqlite3
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from sqlite_utils import Database
except ImportError:
    raise ImportError(
        "sqlite-utils is required for job persistence. "
        "Install it with: pip install sqlite-utils"
    )

from .backends import JobStore, Rescheduler
from .errors import JobNotFoundError
from .models import Item, ItemFailure, JobState, OperationStatus, StateTransition


SCHEMA_SQL = """
-- Job-level records
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    phase TEXT NOT NULL,
    notifier TEXT NOT NULL,
    scope_size INTEGER NOT NULL DEFAULT 1,
    pass_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    notify_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_phase ON jobs(phase);

-- Items, one row per (job, index)
CREATE TABLE IF NOT EXISTS job_items (
    job_id TEXT NOT NULL,
    item_index INTEGER NOT NULL,
    payload TEXT,
    context TEXT,
    wait_for_previous INTEGER NOT NULL DEFAULT 0,
    handle TEXT,
    status TEXT,
    failure TEXT,
    poll_count INTEGER NOT NULL DEFAULT 0,
    submitted_at TEXT,
    finished_at TEXT,
    PRIMARY KEY (job_id, item_index),
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    item_index INTEGER,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);

-- Pending passes (at most one per job)
CREATE TABLE IF NOT EXISTS scheduled_passes (
    job_id TEXT PRIMARY KEY,
    due_at TEXT NOT NULL,
    claimed_by TEXT,
    claimed_at TEXT,
    follow_up INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_passes_due ON scheduled_passes(claimed_by, due_at);
"""


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SQLiteJobStore(JobStore):
    """SQLite-based job store with ACID saves.

    Features:
    - WAL mode for better concurrent reads
    - Whole-job saves in one transaction
    - JSON columns for payload, context, handle, status and failure
    """

    def __init__(self, db_path: str):
        """Initialize job database.

        Args:
            db_path: Path to SQLite database file

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = Database(str(self.db_path))

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    def close(self) -> None:
        """Close the underlying connection."""
        self.db.conn.close()

    def save_job(self, state: JobState) -> None:
        """Insert or replace a job and all of its items (atomic).

        Args:
            state: Job-state record to persist

        Also stamps state.updated_at.
        """
        state.updated_at = datetime.now()

        job_row = {
            "job_id": state.job_id,
            "phase": state.phase.value,
            "notifier": state.notifier,
            "scope_size": state.scope_size,
            "pass_count": state.pass_count,
            "created_at": _iso(state.created_at),
            "updated_at": _iso(state.updated_at),
            "completed_at": _iso(state.completed_at),
            "notify_error": state.notify_error,
        }
        item_rows = [self._item_to_row(state.job_id, item) for item in state.items]

        with self.db.conn:
            self.db.conn.execute(
                """
                INSERT OR REPLACE INTO jobs (
                    job_id, phase, notifier, scope_size, pass_count,
                    created_at, updated_at, completed_at, notify_error
                ) VALUES (
                    :job_id, :phase, :notifier, :scope_size, :pass_count,
                    :created_at, :updated_at, :completed_at, :notify_error
                )
                """,
                job_row,
            )
            self.db.conn.executemany(
                """
                INSERT OR REPLACE INTO job_items (
                    job_id, item_index, payload, context, wait_for_previous,
                    handle, status, failure, poll_count, submitted_at, finished_at
                ) VALUES (
                    :job_id, :item_index, :payload, :context, :wait_for_previous,
                    :handle, :status, :failure, :poll_count, :submitted_at, :finished_at
                )
                """,
                item_rows,
            )

    def load_job(self, job_id: str) -> JobState:
        """Load a job-state record with its items in index order.

        Raises:
            JobNotFoundError: If no job has this id
        """
        rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            raise JobNotFoundError(job_id)

        return self._row_to_job(rows[0])

    def list_jobs(self, phase_filter: Optional[str] = None) -> List[JobState]:
        """Query jobs by phase, oldest first.

        Complexity: O(n) full scan (acceptable for status commands)
        """
        if phase_filter:
            rows = self.db["jobs"].rows_where(
                "phase = ?", [phase_filter], order_by="created_at"
            )
        else:
            rows = self.db["jobs"].rows_where(order_by="created_at")

        return [self._row_to_job(row) for row in rows]

    def delete_job(self, job_id: str) -> bool:
        """Remove a job together with its items, transitions and pending pass."""
        with self.db.conn:
            cursor = self.db.conn.execute("DELETE FROM jobs WHERE job_id = ?", (job_id,))
            deleted = cursor.rowcount > 0
            self.db.conn.execute("DELETE FROM job_items WHERE job_id = ?", (job_id,))
            self.db.conn.execute("DELETE FROM state_transitions WHERE job_id = ?", (job_id,))
            self.db.conn.execute("DELETE FROM scheduled_passes WHERE job_id = ?", (job_id,))
        return deleted

    def clear(self) -> int:
        """Delete every job. Returns the number of jobs removed."""
        count = self.db["jobs"].count
        with self.db.conn:
            for table in ("job_items", "state_transitions", "scheduled_passes", "jobs"):
                self.db.conn.execute(f"DELETE FROM {table}")
        return count

    def log_transition(self, transition: StateTransition) -> None:
        """Append a transition to the audit trail."""
        self.db["state_transitions"].insert({
            "job_id": transition.job_id,
            "item_index": transition.item_index,
            "from_state": transition.from_state,
            "to_state": transition.to_state,
            "timestamp": _iso(transition.timestamp),
            "worker_id": transition.worker_id,
            "error_snippet": transition.error_snippet[:200] if transition.error_snippet else None,
        })

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        """Return a job's transitions in insertion order."""
        rows = self.db["state_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id"
        )
        return [StateTransition(**row) for row in rows]

    def _item_to_row(self, job_id: str, item: Item) -> Dict[str, Any]:
        return {
            "job_id": job_id,
            "item_index": item.index,
            "payload": _dumps(item.payload),
            "context": _dumps(item.context),
            "wait_for_previous": int(item.wait_for_previous),
            "handle": _dumps(item.handle),
            "status": item.status.model_dump_json() if item.status else None,
            "failure": item.failure.model_dump_json() if item.failure else None,
            "poll_count": item.poll_count,
            "submitted_at": _iso(item.submitted_at),
            "finished_at": _iso(item.finished_at),
        }

    def _row_to_item(self, row: Dict[str, Any]) -> Item:
        return Item(
            index=row["item_index"],
            payload=_loads(row["payload"]),
            context=_loads(row["context"]),
            wait_for_previous=bool(row["wait_for_previous"]),
            handle=_loads(row["handle"]),
            status=OperationStatus.model_validate_json(row["status"]) if row["status"] else None,
            failure=ItemFailure.model_validate_json(row["failure"]) if row["failure"] else None,
            poll_count=row["poll_count"],
            submitted_at=row["submitted_at"],
            finished_at=row["finished_at"],
        )

    def _row_to_job(self, row: Dict[str, Any]) -> JobState:
        item_rows = self.db["job_items"].rows_where(
            "job_id = ?", [row["job_id"]], order_by="item_index"
        )
        return JobState(
            job_id=row["job_id"],
            items=[self._row_to_item(item_row) for item_row in item_rows],
            phase=row["phase"],
            notifier=row["notifier"],
            scope_size=row["scope_size"],
            pass_count=row["pass_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            notify_error=row["notify_error"],
        )


class SQLitePassQueue(Rescheduler):
    """SQLite-based pass queue: the driver's re-scheduling collaborator.

    Features:
    - One row per job (primary key), so a job never has two pending passes
    - Atomic claim via UPDATE...RETURNING with BEGIN IMMEDIATE
    - Exponential backoff retry for database lock contention
    - Follow-up passes requested during a claimed pass are kept until finish()
    - Crash recovery via reset_stale_claims()
    """

    def __init__(self, store: SQLiteJobStore):
        """Initialize pass queue.

        Args:
            store: SQLiteJobStore instance (shares same database)
        """
        self.store = store
        self.db = store.db

    def schedule(self, job_id: str, delay_s: float = 0.0) -> None:
        """Request the next pass for job_id.

        Idempotency:
        - No row: insert an unclaimed pass due after delay_s
        - Unclaimed row: move its due time
        - Claimed row (pass running): flag a follow-up, released by finish()
        """
        now = datetime.now()
        due_at = now + timedelta(seconds=delay_s)

        with self.db.conn:
            self.db.conn.execute("""
                INSERT INTO scheduled_passes (job_id, due_at, claimed_by, claimed_at,
                                              follow_up, created_at)
                VALUES (?, ?, NULL, NULL, 0, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    due_at = excluded.due_at,
                    follow_up = CASE
                        WHEN scheduled_passes.claimed_by IS NULL THEN 0
                        ELSE 1
                    END
            """, (job_id, due_at.isoformat(), now.isoformat()))

    def claim(self, worker_id: str) -> Optional[str]:
        """Atomically claim the next due pass.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            job_id of the claimed pass, or None if nothing is due
        """
        return self._claim_with_retry(worker_id, max_retries=3)

    def claim_job(self, job_id: str, worker_id: str) -> Optional[str]:
        """Atomically claim the pending pass of one job, due or not.

        Returns:
            job_id if claimed, or None if the job has no pending pass or
            another worker holds it
        """
        return self._claim_with_retry(worker_id, job_id=job_id, max_retries=3)

    def _claim_with_retry(
        self, worker_id: str, job_id: Optional[str] = None, max_retries: int = 3
    ) -> Optional[str]:
        """Claim with exponential backoff on SQLITE_BUSY.

        Implementation note:
        - BEGIN IMMEDIATE takes the write lock up front, so two workers
          can never select the same pass before the update lands
        - Exponential backoff: 100ms, 200ms, 400ms delays
        """
        for attempt in range(max_retries):
            try:
                with self.db.conn:
                    self.db.conn.execute("BEGIN IMMEDIATE")

                    try:
                        now = datetime.now().isoformat()

                        if job_id is None:
                            cursor = self.db.conn.execute("""
                                UPDATE scheduled_passes
                                SET claimed_by = ?,
                                    claimed_at = ?
                                WHERE job_id = (
                                    SELECT job_id FROM scheduled_passes
                                    WHERE claimed_by IS NULL AND due_at <= ?
                                    ORDER BY due_at ASC, created_at ASC
                                    LIMIT 1
                                )
                                RETURNING job_id
                            """, (worker_id, now, now))
                        else:
                            cursor = self.db.conn.execute("""
                                UPDATE scheduled_passes
                                SET claimed_by = ?,
                                    claimed_at = ?
                                WHERE job_id = ? AND claimed_by IS NULL
                                RETURNING job_id
                            """, (worker_id, now, job_id))

                        rows = cursor.fetchall()
                        self.db.conn.commit()

                        return rows[0][0] if rows else None

                    except Exception:
                        self.db.conn.rollback()
                        raise

            except sqlite3.OperationalError as e:
                error_msg = str(e).lower()
                if "database is locked" in error_msg and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

        return None

    def finish(self, job_id: str) -> None:
        """Release a claimed pass.

        If the pass scheduled a follow-up, the row goes back to unclaimed;
        otherwise it is removed.
        """
        with self.db.conn:
            self.db.conn.execute(
                "DELETE FROM scheduled_passes WHERE job_id = ? AND follow_up = 0",
                (job_id,),
            )
            self.db.conn.execute("""
                UPDATE scheduled_passes
                SET claimed_by = NULL, claimed_at = NULL, follow_up = 0
                WHERE job_id = ?
            """, (job_id,))

    def release(self, job_id: str) -> None:
        """Give up a claim without consuming the pass, so it can run again."""
        with self.db.conn:
            self.db.conn.execute("""
                UPDATE scheduled_passes
                SET claimed_by = NULL, claimed_at = NULL, follow_up = 0
                WHERE job_id = ?
            """, (job_id,))

    def cancel(self, job_id: str) -> None:
        """Drop any pending pass for job_id."""
        with self.db.conn:
            self.db.conn.execute("DELETE FROM scheduled_passes WHERE job_id = ?", (job_id,))

    def pending_count(self) -> int:
        """Number of scheduled passes, claimed or not."""
        return self.db["scheduled_passes"].count

    def next_due_at(self) -> Optional[datetime]:
        """Earliest due time among unclaimed passes."""
        row = self.db.execute(
            "SELECT MIN(due_at) FROM scheduled_passes WHERE claimed_by IS NULL"
        ).fetchone()
        if not row or row[0] is None:
            return None
        return datetime.fromisoformat(row[0])

    def reset_stale_claims(self, timeout_s: int = 600) -> int:
        """Crash recovery: release passes claimed longer than timeout_s ago.

        Returns:
            Count of released passes

        The pass re-runs from stored state; a worker that died between a
        submit and the save of that pass leaves the item unsubmitted in the
        store, so the submit is repeated.
        """
        cutoff = (datetime.now() - timedelta(seconds=timeout_s)).isoformat()

        with self.db.conn:
            cursor = self.db.conn.execute("""
                UPDATE scheduled_passes
                SET claimed_by = NULL, claimed_at = NULL, follow_up = 0
                WHERE claimed_by IS NOT NULL AND claimed_at < ?
                RETURNING job_id
            """, (cutoff,))
            rows = cursor.fetchall()

        for row in rows:
            self.store.log_transition(StateTransition(
                job_id=row[0],
                from_state="claimed",
                to_state="scheduled",
                error_snippet="Reset stale pass claim (crash recovery)",
            ))

        return len(rows)
