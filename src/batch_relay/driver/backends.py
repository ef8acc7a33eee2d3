from __future__ import annotations

"""Abstract interfaces for the job driver's collaborators.

The driver core only talks to these seams:
- RemoteOperations: the two-call submit/poll protocol of the remote side
- JobStore: persistence for job-state records and the audit trail
- Rescheduler: the facility that invokes the driver again for the next pass
- CompletionNotifier: observer told when a job starts and when it completes
- DispatchPool: optional concurrency for multi-item scopes

Local implementations live in sqlite_backend, worker, and notifiers; the
concrete remote sides live in batch_relay.remote.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Tuple

if TYPE_CHECKING:
    from .models import Item, JobState, OperationStatus, StateTransition


class RemoteOperations(ABC):
    """Two-call protocol for long-running remote operations.

    Implementations may raise SubmitError/PollError (or any other
    exception); the dispatch step records whatever is raised on the item.
    """

    @abstractmethod
    def submit(self, payload: Any) -> Tuple[Any, "OperationStatus"]:
        """Start the remote operation described by payload.

        Args:
            payload: Opaque operation description from the item

        Returns:
            Tuple of (handle, initial_status)

        Implementation notes:
        - The handle MUST be JSON-serializable; it is persisted between passes
        - initial_status may already report done for synchronous operations
        """
        pass

    @abstractmethod
    def poll(self, handle: Any) -> "OperationStatus":
        """Report the current status of a previously submitted operation.

        Args:
            handle: Value returned by submit (after a JSON round trip)

        Returns:
            Latest status snapshot
        """
        pass


class JobStore(ABC):
    """Persistent store for job-state records.

    Implementations must provide:
    - Atomic save of a job and all of its items
    - Loads that return a fresh JobState (never a cached instance)
    - An append-only transition log for auditing
    """

    @abstractmethod
    def save_job(self, state: "JobState") -> None:
        """Insert or replace a job and all of its items (atomic)."""
        pass

    @abstractmethod
    def load_job(self, job_id: str) -> "JobState":
        """Load a job-state record.

        Raises:
            JobNotFoundError: If no job has this id
        """
        pass

    @abstractmethod
    def list_jobs(self, phase_filter: Optional[str] = None) -> List["JobState"]:
        """Query jobs, optionally restricted to one phase."""
        pass

    @abstractmethod
    def delete_job(self, job_id: str) -> bool:
        """Remove a job, its items and its transitions.

        Returns:
            True if a job was deleted
        """
        pass

    @abstractmethod
    def log_transition(self, transition: "StateTransition") -> None:
        """Append a state transition to the audit trail."""
        pass

    @abstractmethod
    def get_transitions(self, job_id: str) -> List["StateTransition"]:
        """Return a job's transitions in insertion order."""
        pass


class Rescheduler(ABC):
    """Facility that invokes the driver again for a job's next pass.

    Implementations must guarantee that at most one pass per job is
    pending or running at any time.
    """

    @abstractmethod
    def schedule(self, job_id: str, delay_s: float = 0.0) -> None:
        """Request one follow-up pass for job_id.

        Args:
            job_id: Job identity
            delay_s: Earliest start, in seconds from now

        Implementation notes:
        - Scheduling an already-pending job must not create a second pass
        """
        pass


class CompletionNotifier(ABC):
    """Observer for job start and completion."""

    @abstractmethod
    def on_batch_started(self, job_id: str) -> None:
        """Called once when a job is created."""
        pass

    @abstractmethod
    def on_complete(self, job_id: str, items: List["Item"]) -> None:
        """Called exactly once when every item is terminal.

        Args:
            job_id: Job identity
            items: Full item list in original order, with context, final
                status and failure
        """
        pass


class DispatchPool(ABC):
    """Concurrency manager for dispatching a multi-item scope."""

    @abstractmethod
    def map(self, fn: Callable, items: List[Any]) -> List[Any]:
        """Apply fn to every item, returning results in input order.

        Implementation notes:
        - Items passed in are distinct objects, safe to mutate in parallel
        - Exceptions from fn propagate to the caller
        """
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for pending tasks to complete
        """
        pass
