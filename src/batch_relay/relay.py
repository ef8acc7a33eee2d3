"""High-level API for creating and running relay jobs.

This module wires the driver to its local collaborators (SQLite store and
pass queue, notifiers, remote backend) and offers the operations the CLI
exposes.

Usage:
    # Create a job from a YAML/JSON item file and run it to completion
    relay.submit_job("items.yaml", config)

    # Run whatever passes are due (e.g. from cron)
    relay.process_passes(config)

    # Inspect
    relay.get_job_stats(config)
"""

import os
import tempfile
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml
from pydantic import ValidationError

from .driver import (
    CompletionNotifier,
    ConfigError,
    InlineRescheduler,
    ItemSpec,
    JobDriver,
    JobNotFoundError,
    JobPhase,
    JobState,
    JsonSummaryNotifier,
    PassNotClaimableError,
    PassRunner,
    PrintNotifier,
    RemoteOperations,
    RunSummary,
    SQLiteJobStore,
    SQLitePassQueue,
    ThreadDispatchPool,
)
from .models import BatchRelayConfig
from .remote import SimulatedOperations, SubprocessOperations

REMOTE_BACKENDS = ("subprocess", "simulated")


def load_job_file(path: str) -> List[ItemSpec]:
    """Load item specs from a YAML or JSON file.

    Accepted shapes:
        - [{payload: ..., context: ..., wait_for_previous: ...}, ...]
        - {items: [...]}

    Raises:
        ConfigError: If the file is missing or malformed
    """
    job_path = Path(path)
    if not job_path.exists():
        raise ConfigError(f"Job file not found: {path}")

    with open(job_path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list) or not data:
        raise ConfigError(f"{path} must contain a non-empty list of items")

    specs = []
    for position, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigError(f"Item {position} in {path} must be a mapping")
        try:
            specs.append(ItemSpec(**entry))
        except ValidationError as e:
            raise ConfigError(f"Item {position} in {path} is invalid: {e}") from e
    return specs


def build_notifiers(config: BatchRelayConfig) -> Dict[str, CompletionNotifier]:
    """Notifier registry shared by every pass."""
    return {
        "print": PrintNotifier(),
        "json": JsonSummaryNotifier(config.notifications.summary_dir),
    }


def build_operations(remote: str, config: BatchRelayConfig) -> RemoteOperations:
    if remote == "subprocess":
        return SubprocessOperations(workdir=config.remote.workdir)
    if remote == "simulated":
        return SimulatedOperations()
    raise ConfigError(f"Unknown remote backend '{remote}' (expected one of {REMOTE_BACKENDS})")


@dataclass
class RelaySession:
    """Driver plus the collaborators it was built with."""

    driver: JobDriver
    store: SQLiteJobStore
    queue: SQLitePassQueue
    runner: PassRunner


@contextmanager
def open_session(
    config: BatchRelayConfig,
    operations: Optional[RemoteOperations] = None,
    notifiers: Optional[Dict[str, CompletionNotifier]] = None,
) -> Iterator[RelaySession]:
    """Build a driver backed by the configured SQLite database.

    A dispatch pool is only started when the scope spans several items.
    """
    store = SQLiteJobStore(config.store.db_path)
    queue = SQLitePassQueue(store)
    operations = operations or build_operations("subprocess", config)
    notifiers = notifiers or build_notifiers(config)

    with ExitStack() as stack:
        stack.callback(store.close)

        pool = None
        if config.driver.scope_size > 1:
            pool = stack.enter_context(ThreadDispatchPool(
                n_workers=config.scheduler.workers,
                show_progress=config.scheduler.show_progress,
            ))

        driver = JobDriver(
            store=store,
            operations=operations,
            rescheduler=queue,
            notifiers=notifiers,
            scope_size=config.driver.scope_size,
            limits=config.driver.limits(),
            pass_delay_s=config.scheduler.poll_interval_s,
            pool=pool,
        )
        runner = PassRunner(
            driver,
            queue,
            poll_interval_s=config.scheduler.poll_interval_s,
            stale_claim_timeout_s=config.scheduler.stale_claim_timeout_s,
        )
        yield RelaySession(driver=driver, store=store, queue=queue, runner=runner)


def submit_job(
    items_path: str,
    config: BatchRelayConfig,
    notifier: str = "print",
    remote: str = "subprocess",
    process: bool = True,
    max_passes: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a job from an item file and optionally run its passes.

    Returns:
        Dictionary with job_id, item count, phase and (if processed) the
        runner summary
    """
    specs = load_job_file(items_path)
    operations = build_operations(remote, config)

    with open_session(config, operations=operations) as session:
        state = session.driver.start_job(specs, notifier=notifier)
        print(f"Created job {state.job_id} with {len(state.items)} items")

        result: Dict[str, Any] = {"job_id": state.job_id, "items": len(state.items)}
        if process:
            summary = session.runner.run(max_passes=max_passes)
            result["passes"] = summary.passes
        else:
            print("\nJob scheduled. Use 'batch-relay run' to process passes.")

        result["phase"] = session.store.load_job(state.job_id).phase.value
        return result


def process_passes(
    config: BatchRelayConfig,
    max_passes: Optional[int] = None,
    remote: str = "subprocess",
) -> RunSummary:
    """Run due passes from the configured database until none remain."""
    with open_session(config, operations=build_operations(remote, config)) as session:
        print(f"Processing passes from {config.store.db_path}...")
        return session.runner.run(max_passes=max_passes)


def run_single_pass(
    job_id: str,
    config: BatchRelayConfig,
    remote: str = "subprocess",
) -> JobPhase:
    """Run exactly one pass for job_id, ahead of its due time.

    The job's pending pass is claimed first, so this never overlaps a pass
    a PassRunner is running for the same job.

    Raises:
        PassNotClaimableError: If the pass is claimed elsewhere or none is scheduled
    """
    worker_id = f"cli-{os.getpid()}"
    with open_session(config, operations=build_operations(remote, config)) as session:
        if session.queue.claim_job(job_id, worker_id) is None:
            raise PassNotClaimableError(job_id)

        try:
            phase = session.driver.run_pass(job_id, worker_id=worker_id)
        except JobNotFoundError:
            session.queue.cancel(job_id)
            raise
        except Exception:
            session.queue.release(job_id)
            raise

        session.queue.finish(job_id)
        return phase


def get_job(job_id: str, config: BatchRelayConfig) -> JobState:
    store = SQLiteJobStore(config.store.db_path)
    try:
        return store.load_job(job_id)
    finally:
        store.close()


def get_job_stats(config: BatchRelayConfig) -> Dict[str, int]:
    """Count jobs per phase plus scheduled passes.

    Returns:
        Dictionary with running, awaiting_next_pass, complete, total and
        scheduled_passes counts
    """
    store = SQLiteJobStore(config.store.db_path)
    try:
        jobs = store.list_jobs()
        stats = {phase.value: 0 for phase in JobPhase}
        for job in jobs:
            stats[job.phase.value] += 1
        stats["total"] = len(jobs)
        stats["scheduled_passes"] = SQLitePassQueue(store).pending_count()
        return stats
    finally:
        store.close()


def clear_jobs(config: BatchRelayConfig) -> int:
    """Delete every stored job and pending pass."""
    store = SQLiteJobStore(config.store.db_path)
    try:
        count = store.clear()
    finally:
        store.close()
    print(f"Cleared {count} jobs")
    return count


DEMO_ITEMS = [
    ItemSpec(payload={"polls": 1}, context={"name": "fetch-a"}),
    ItemSpec(payload={"polls": 2}, context={"name": "fetch-b"}),
    ItemSpec(payload={"polls": 3}, context={"name": "provision-db"}),
    ItemSpec(payload={"polls": 1}, context={"name": "migrate-db"}, wait_for_previous=True),
    ItemSpec(
        payload={"fail": "submit", "error": "quota exceeded"},
        context={"name": "provision-cache"},
    ),
    ItemSpec(
        payload={"polls": 1, "error_message": "remote task crashed"},
        context={"name": "warm-cache"},
        wait_for_previous=True,
    ),
]


def run_demo(config: Optional[BatchRelayConfig] = None) -> JobState:
    """Run a simulated job showing the wait-chain and failure handling."""
    config = config or BatchRelayConfig()

    with tempfile.TemporaryDirectory() as tmpdir:
        demo_config = config.merge_cli_overrides({
            "db": str(Path(tmpdir) / "demo.db"),
            "poll_interval": 0.0,
        })
        with open_session(demo_config, operations=SimulatedOperations()) as session:
            state = session.driver.start_job(DEMO_ITEMS, notifier="print")
            summary = session.runner.run()
            print(f"\nDemo finished in {summary.passes} passes")
            return session.store.load_job(state.job_id)


def run_inline(
    specs: List[Any],
    operations: RemoteOperations,
    notifier: CompletionNotifier,
    db_path: Optional[str] = None,
    scope_size: int = 1,
) -> JobState:
    """Run a job to completion in-process with an InlineRescheduler.

    Uses a throwaway database unless db_path is given.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = SQLiteJobStore(db_path or str(Path(tmpdir) / "inline.db"))
        try:
            rescheduler = InlineRescheduler()
            driver = JobDriver(
                store=store,
                operations=operations,
                rescheduler=rescheduler,
                notifiers={"inline": notifier},
                scope_size=scope_size,
            )
            state = driver.start_job(specs, notifier="inline")
            rescheduler.run_until_idle(driver)
            return store.load_job(state.job_id)
        finally:
            store.close()
