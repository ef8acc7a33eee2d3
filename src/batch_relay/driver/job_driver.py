"""Job driver: the pass-based state machine that carries a job to completion.

Every pass is a discrete unit of work:
1. Reload the job-state record from the store
2. Compute eligibility from scratch
3. Nothing eligible → mark complete, save, notify once
4. Otherwise dispatch the scope, save, and schedule exactly one follow-up

Nothing survives between passes except what the store holds, so any worker
can run the next pass after a crash or restart.
"""

from datetime import datetime
from functools import partial
from typing import Dict, Iterable, List, Optional, Sequence

from .backends import CompletionNotifier, DispatchPool, JobStore, RemoteOperations, Rescheduler
from .dispatch import DispatchLimits, dispatch
from .eligibility import eligible
from .errors import ConfigError, DriverInvariantError
from .models import Item, ItemState, JobPhase, JobState, SpecLike, StateTransition


class JobDriver:
    """Orchestrates passes for relay jobs.

    The driver itself is stateless; the store, the remote side, the
    rescheduler and the notifier registry are injected.

    Example:
        >>> driver = JobDriver(store, operations, rescheduler, {"print": PrintNotifier()})
        >>> state = driver.start_job([("build-a", None, False), ("build-b", None, True)])
        >>> driver.run_pass(state.job_id)
        <JobPhase.AWAITING_NEXT_PASS: 'awaiting_next_pass'>
    """

    def __init__(
        self,
        store: JobStore,
        operations: RemoteOperations,
        rescheduler: Rescheduler,
        notifiers: Dict[str, CompletionNotifier],
        scope_size: int = 1,
        limits: Optional[DispatchLimits] = None,
        pass_delay_s: float = 0.0,
        pool: Optional[DispatchPool] = None,
    ):
        """Initialize driver.

        Args:
            store: Persistence for job-state records
            operations: Remote submit/poll collaborator
            rescheduler: Facility that runs the next pass
            notifiers: Completion notifiers by name
            scope_size: Default number of items dispatched per pass
            limits: Poll guard applied by the dispatch step
            pass_delay_s: Delay requested for each follow-up pass
            pool: Optional pool used when a pass dispatches several items
        """
        if scope_size < 1:
            raise ValueError(f"scope_size must be >= 1, got {scope_size}")

        self.store = store
        self.operations = operations
        self.rescheduler = rescheduler
        self.notifiers = notifiers
        self.scope_size = scope_size
        self.limits = limits or DispatchLimits()
        self.pass_delay_s = pass_delay_s
        self.pool = pool

    def start_job(
        self,
        specs: Sequence[SpecLike],
        notifier: str = "print",
        scope_size: Optional[int] = None,
    ) -> JobState:
        """Create a job, announce it, and schedule its first pass.

        Args:
            specs: Ordered (payload, context, wait_for_previous) specs
            notifier: Name of a registered completion notifier
            scope_size: Items per pass (default: driver's scope_size)

        Returns:
            The saved initial JobState

        Raises:
            ConfigError: If notifier is not registered
            ValueError: If specs is empty or malformed

        A job whose on_batch_started raises is deleted again and the error
        propagates.
        """
        callback = self._resolve_notifier(notifier)

        state = JobState.create(
            specs,
            notifier=notifier,
            scope_size=self.scope_size if scope_size is None else scope_size,
        )
        self.store.save_job(state)
        self.store.log_transition(StateTransition(
            job_id=state.job_id, from_state=None, to_state=JobPhase.RUNNING.value
        ))

        # Announce before the first pass exists, so no pass can outrun it
        try:
            callback.on_batch_started(state.job_id)
        except Exception:
            self.store.delete_job(state.job_id)
            raise
        self.rescheduler.schedule(state.job_id)
        return state

    def run_pass(
        self,
        job_id: str,
        scope: Optional[Iterable[int]] = None,
        worker_id: Optional[str] = None,
    ) -> JobPhase:
        """Run one pass for job_id.

        Args:
            job_id: Job identity
            scope: Optional item indexes to restrict this pass to. Indexes
                are resolved against the stored job; ones that are not
                currently eligible are skipped.
            worker_id: Recorded on audit transitions

        Returns:
            The job's phase after the pass

        Raises:
            JobNotFoundError: If the store has no such job
            DriverInvariantError: If scope names an index the job lacks
            ConfigError: If the job's notifier is not registered
        """
        state = self.store.load_job(job_id)
        if state.is_complete:
            return state.phase

        callback = self._resolve_notifier(state.notifier)
        by_index = {item.index: item for item in state.items}

        candidates = eligible(state.items)
        if not candidates:
            return self._complete(state, callback, worker_id)

        if scope is None:
            selected = candidates[:state.scope_size]
        else:
            selected = self._resolve_scope(state, by_index, scope, candidates)

        before = {item.index: item.state for item in selected}
        self._dispatch_all(selected)

        previous_phase = state.phase
        state.pass_count += 1
        state.phase = JobPhase.AWAITING_NEXT_PASS
        self.store.save_job(state)

        if previous_phase != state.phase:
            self.store.log_transition(StateTransition(
                job_id=job_id,
                from_state=previous_phase.value,
                to_state=state.phase.value,
                worker_id=worker_id,
            ))
        self._log_item_transitions(job_id, selected, before, worker_id)

        self.rescheduler.schedule(job_id, self.pass_delay_s)
        return state.phase

    def drive(self, job_id: str, max_passes: Optional[int] = None) -> JobState:
        """Run passes back to back until the job completes.

        Intended for callers that own the loop (tests, scripts); a scheduled
        deployment runs passes through a PassRunner instead.
        """
        passes = 0
        while self.run_pass(job_id) != JobPhase.COMPLETE:
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
        return self.store.load_job(job_id)

    def _resolve_notifier(self, name: str) -> CompletionNotifier:
        if name not in self.notifiers:
            raise ConfigError(
                f"Unknown notifier '{name}' (registered: {sorted(self.notifiers)})"
            )
        return self.notifiers[name]

    def _resolve_scope(
        self,
        state: JobState,
        by_index: Dict[int, Item],
        scope: Iterable[int],
        candidates: List[Item],
    ) -> List[Item]:
        allowed = {item.index for item in candidates}
        selected = []
        for index in scope:
            item = by_index.get(index)
            if item is None:
                raise DriverInvariantError(
                    f"Scope index {index} not found in job {state.job_id} "
                    f"({len(state.items)} items)"
                )
            if item.index in allowed:
                allowed.discard(item.index)
                selected.append(item)
        return selected

    def _dispatch_all(self, selected: List[Item]) -> None:
        step = partial(dispatch, operations=self.operations, limits=self.limits)
        if self.pool is not None and len(selected) > 1:
            self.pool.map(step, selected)
        else:
            for item in selected:
                step(item)

    def _complete(
        self,
        state: JobState,
        callback: CompletionNotifier,
        worker_id: Optional[str],
    ) -> JobPhase:
        previous_phase = state.phase
        state.phase = JobPhase.COMPLETE
        state.completed_at = datetime.now()
        self.store.save_job(state)
        self.store.log_transition(StateTransition(
            job_id=state.job_id,
            from_state=previous_phase.value,
            to_state=JobPhase.COMPLETE.value,
            worker_id=worker_id,
        ))

        try:
            callback.on_complete(state.job_id, state.items)
        except Exception as e:
            # Completion is already persisted; the notification is not retried
            state.notify_error = f"{type(e).__name__}: {e}"[:500]
            self.store.save_job(state)
            print(f"Notifier '{state.notifier}' failed for job {state.job_id}: {e}")

        return state.phase

    def _log_item_transitions(
        self,
        job_id: str,
        items: List[Item],
        before: Dict[int, ItemState],
        worker_id: Optional[str],
    ) -> None:
        for item in items:
            if item.state == before[item.index]:
                continue

            error = None
            if item.failure is not None:
                error = f"{item.failure.error_type}: {item.failure.message}"
            elif item.status is not None and item.status.error_message:
                error = item.status.error_message

            self.store.log_transition(StateTransition(
                job_id=job_id,
                item_index=item.index,
                from_state=before[item.index].value,
                to_state=item.state.value,
                worker_id=worker_id,
                error_snippet=error,
            ))
