"""Pass-based job driver with persisted, resumable state."""

from .backends import CompletionNotifier, DispatchPool, JobStore, RemoteOperations, Rescheduler
from .dispatch import DispatchLimits, dispatch
from .eligibility import eligible
from .errors import (
    BatchRelayError,
    ConfigError,
    DriverInvariantError,
    JobNotFoundError,
    PassNotClaimableError,
    PollError,
    SubmitError,
)
from .job_driver import JobDriver
from .models import (
    FailureKind,
    Item,
    ItemFailure,
    ItemSpec,
    ItemState,
    JobPhase,
    JobState,
    OperationStatus,
    StateTransition,
)
from .notifiers import JsonSummaryNotifier, PrintNotifier, RecordingNotifier
from .sqlite_backend import SQLiteJobStore, SQLitePassQueue
from .worker import InlineRescheduler, PassRunner, RunSummary, ThreadDispatchPool

__all__ = [
    "CompletionNotifier",
    "DispatchPool",
    "JobStore",
    "RemoteOperations",
    "Rescheduler",
    "DispatchLimits",
    "dispatch",
    "eligible",
    "BatchRelayError",
    "ConfigError",
    "DriverInvariantError",
    "JobNotFoundError",
    "PassNotClaimableError",
    "PollError",
    "SubmitError",
    "JobDriver",
    "FailureKind",
    "Item",
    "ItemFailure",
    "ItemSpec",
    "ItemState",
    "JobPhase",
    "JobState",
    "OperationStatus",
    "StateTransition",
    "JsonSummaryNotifier",
    "PrintNotifier",
    "RecordingNotifier",
    "SQLiteJobStore",
    "SQLitePassQueue",
    "InlineRescheduler",
    "PassRunner",
    "RunSummary",
    "ThreadDispatchPool",
]
