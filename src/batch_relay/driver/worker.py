"""Pass execution: worker loop, inline rescheduler and dispatch pool.

This module provides the pieces that keep jobs moving:
- PassRunner claims due passes from the SQLite pass queue and runs them
- InlineRescheduler runs passes in-process for embedding and scripts
- ThreadDispatchPool dispatches a multi-item scope concurrently
"""

import os
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from tqdm import tqdm

from .backends import DispatchPool, Rescheduler
from .errors import JobNotFoundError
from .job_driver import JobDriver
from .models import JobPhase
from .sqlite_backend import SQLitePassQueue


class ThreadDispatchPool(DispatchPool):
    """ThreadPoolExecutor-based pool for dispatching a scope in parallel.

    Remote submit/poll calls are I/O bound, so threads are enough. Each task
    touches a distinct Item; the store is only written after map() returns.
    """

    def __init__(self, n_workers: int = 4, show_progress: bool = False):
        """Initialize dispatch pool.

        Args:
            n_workers: Number of dispatch threads
            show_progress: Show a tqdm bar per dispatched scope
        """
        self.n_workers = n_workers
        self.show_progress = show_progress
        self._executor = None

    def __enter__(self):
        """Create executor on context entry."""
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="relay-dispatch"
        )
        return self

    def __exit__(self, *args):
        """Shutdown executor on context exit."""
        self.shutdown(wait=True)

    def map(self, fn: Callable, items: List[Any]) -> List[Any]:
        """Parallel map with optional progress tracking.

        Returns:
            Results in input order
        """
        if not self._executor:
            raise RuntimeError("Dispatch pool not initialized (use with statement)")

        futures = {self._executor.submit(fn, item): position for position, item in enumerate(items)}

        results: List[Any] = [None] * len(items)
        for future in tqdm(
            as_completed(futures),
            total=len(items),
            desc="Dispatching",
            unit="item",
            leave=False,
            disable=not self.show_progress,
        ):
            results[futures[future]] = future.result()

        return results

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None


@dataclass
class RunSummary:
    """Counters reported by PassRunner.run()."""

    passes: int = 0
    completed_jobs: int = 0
    missing_jobs: int = 0
    idle_waits: int = 0
    reset_claims: int = 0


class PassRunner:
    """Worker loop that runs due passes from a SQLitePassQueue.

    The loop ends when no pass is left to run (or max_passes is reached).
    Passes that are scheduled but not yet due are waited for.
    """

    def __init__(
        self,
        driver: JobDriver,
        queue: SQLitePassQueue,
        poll_interval_s: float = 1.0,
        stale_claim_timeout_s: int = 600,
        worker_id: Optional[str] = None,
    ):
        self.driver = driver
        self.queue = queue
        self.poll_interval_s = poll_interval_s
        self.stale_claim_timeout_s = stale_claim_timeout_s
        self.worker_id = worker_id or f"worker-{os.getpid()}"

    def run(self, max_passes: Optional[int] = None) -> RunSummary:
        """Claim and run passes until the queue is drained.

        Args:
            max_passes: Stop after this many passes (default: no limit)

        Returns:
            RunSummary with pass and completion counts

        Error handling:
        - Passes for deleted jobs are dropped
        - Any other error releases the claim (the pass stays scheduled)
          and propagates
        """
        summary = RunSummary()
        summary.reset_claims = self.queue.reset_stale_claims(self.stale_claim_timeout_s)
        if summary.reset_claims:
            print(f"Released {summary.reset_claims} stale pass claims")

        while max_passes is None or summary.passes < max_passes:
            job_id = self.queue.claim(self.worker_id)

            if job_id is None:
                next_due = self.queue.next_due_at()
                if next_due is None:
                    break
                wait_s = (next_due - datetime.now()).total_seconds()
                time.sleep(min(self.poll_interval_s, max(wait_s, 0.0)))
                summary.idle_waits += 1
                continue

            started = datetime.now()
            try:
                phase = self.driver.run_pass(job_id, worker_id=self.worker_id)
            except JobNotFoundError:
                print(f"  ✗ Dropping pass for missing job {job_id}")
                self.queue.cancel(job_id)
                summary.missing_jobs += 1
                continue
            except Exception:
                self.queue.release(job_id)
                raise

            self.queue.finish(job_id)
            summary.passes += 1
            if phase == JobPhase.COMPLETE and self._completed_since(job_id, started):
                summary.completed_jobs += 1

        return summary

    def _completed_since(self, job_id: str, started: datetime) -> bool:
        """True if this pass completed the job, not an earlier one."""
        completed_at = self.driver.store.load_job(job_id).completed_at
        return completed_at is not None and completed_at >= started


class InlineRescheduler(Rescheduler):
    """In-process rescheduler that keeps at most one pending pass per job.

    Passes run when run_until_idle() is called, in scheduling order, after
    their requested delay has elapsed.
    """

    def __init__(self):
        self._order: Deque[str] = deque()
        self._due: Dict[str, float] = {}

    def schedule(self, job_id: str, delay_s: float = 0.0) -> None:
        due = time.monotonic() + delay_s
        if job_id not in self._due:
            self._order.append(job_id)
        self._due[job_id] = due

    def pending(self) -> List[str]:
        return list(self._order)

    def run_until_idle(self, driver: JobDriver, max_passes: Optional[int] = None) -> int:
        """Run scheduled passes until none remain.

        Returns:
            Number of passes run
        """
        passes = 0
        while self._order and (max_passes is None or passes < max_passes):
            job_id = self._order.popleft()
            wait_s = self._due.pop(job_id) - time.monotonic()
            if wait_s > 0:
                time.sleep(wait_s)

            driver.run_pass(job_id)
            passes += 1

        return passes
