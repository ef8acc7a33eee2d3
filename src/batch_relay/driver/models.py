"""Pydantic models for job driver data structures.

This module defines the persisted state of a relay job: the items being
driven, their remote status and failure records, and the job-level record
that is reloaded at the start of every pass. All models are plain data so a
job can be written to the store between passes and resumed by any worker.
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator


class ItemState(str, Enum):
    """Derived item lifecycle states.

    State transitions:
        pending   → submitted   (submit returned a handle)
        pending   → failed      (submit raised)
        pending   → succeeded   (submit returned an already-done status)
        submitted → succeeded   (poll reported done)
        submitted → failed      (poll raised, poll guard hit, or done with error)
    """

    PENDING = "pending"  # Not submitted yet
    SUBMITTED = "submitted"  # Handle held, waiting on remote side
    SUCCEEDED = "succeeded"  # Remote operation finished cleanly
    FAILED = "failed"  # Captured failure or remote error message


class JobPhase(str, Enum):
    """Job driver states.

    State transitions:
        running            → awaiting_next_pass   (pass dispatched work)
        awaiting_next_pass → awaiting_next_pass   (next pass dispatched work)
        running            → complete             (nothing eligible)
        awaiting_next_pass → complete             (nothing eligible)
    """

    RUNNING = "running"
    AWAITING_NEXT_PASS = "awaiting_next_pass"
    COMPLETE = "complete"


class FailureKind(str, Enum):
    """Where an item failure was captured."""

    SUBMIT = "submit"
    POLL = "poll"
    TIMEOUT = "timeout"


class OperationStatus(BaseModel):
    """Status snapshot reported by the remote side."""

    done: bool = Field(default=False, description="Remote operation reached a terminal state")
    error_message: Optional[str] = Field(
        default=None, description="Error reported by the remote operation"
    )
    message: Optional[str] = Field(default=None, description="Free-form progress message")


def json_roundtrip_error(value: Any) -> Optional[str]:
    """Why value would not come back unchanged from the store, or None.

    Payloads, contexts and handles are stored as JSON, so tuples (which
    load as lists) and non-string keys (which load as strings) are refused
    up front.
    """
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError) as e:
        return f"not JSON-serializable: {e}"
    if json.loads(encoded) != value:
        return "changes when stored as JSON (use lists and string keys)"
    return None


class ItemFailure(BaseModel):
    """Error captured while submitting or polling an item."""

    kind: FailureKind = Field(..., description="Phase that produced the failure")
    error_type: str = Field(..., description="Exception class name")
    message: str = Field(default="", description="Error message (truncated)")
    occurred_at: datetime = Field(default_factory=datetime.now, description="Capture time")

    @classmethod
    def from_exception(cls, kind: FailureKind, exc: BaseException) -> "ItemFailure":
        """Build a failure record from a raised exception."""
        return cls(kind=kind, error_type=type(exc).__name__, message=str(exc)[:500])


class ItemSpec(BaseModel):
    """Caller-supplied description of one unit of work."""

    payload: Any = Field(..., description="Opaque description of the remote operation")
    context: Any = Field(default=None, description="Caller data returned at completion")
    wait_for_previous: bool = Field(
        default=False, description="Block until the preceding item is terminal"
    )

    @field_validator("payload", "context")
    @classmethod
    def survives_json(cls, v: Any) -> Any:
        """Validate that the value reloads unchanged between passes."""
        problem = json_roundtrip_error(v)
        if problem:
            raise ValueError(problem)
        return v


class Item(BaseModel):
    """One unit of work plus its accumulated result and error state.

    `index`, `payload`, `context` and `wait_for_previous` are fixed at job
    creation. `handle` and `failure` are written at most once by the dispatch
    step; `status` is overwritten on every poll.
    """

    index: int = Field(..., ge=0, description="Position in the job's item list")
    payload: Any = Field(..., description="Opaque description of the remote operation")
    context: Any = Field(default=None, description="Caller data returned at completion")
    wait_for_previous: bool = Field(default=False, description="Wait-chain flag")
    handle: Optional[Any] = Field(default=None, description="Handle returned by submit")
    status: Optional[OperationStatus] = Field(default=None, description="Latest polled status")
    failure: Optional[ItemFailure] = Field(default=None, description="Captured failure")
    poll_count: int = Field(default=0, ge=0, description="Number of polls issued")
    submitted_at: Optional[datetime] = Field(default=None, description="Submit time")
    finished_at: Optional[datetime] = Field(default=None, description="Time item went terminal")

    @property
    def is_terminal(self) -> bool:
        """True once a failure is captured or the remote side reports done."""
        if self.failure is not None:
            return True
        return self.status is not None and self.status.done

    @property
    def state(self) -> ItemState:
        if self.failure is not None:
            return ItemState.FAILED
        if self.status is not None and self.status.done:
            if self.status.error_message:
                return ItemState.FAILED
            return ItemState.SUCCEEDED
        if self.handle is not None:
            return ItemState.SUBMITTED
        return ItemState.PENDING


SpecLike = Union[ItemSpec, dict, tuple, list]


def coerce_spec(spec: SpecLike) -> ItemSpec:
    """Accept an ItemSpec, a mapping, or a (payload, context, wait) tuple."""
    if isinstance(spec, ItemSpec):
        return spec
    if isinstance(spec, dict):
        return ItemSpec(**spec)
    if isinstance(spec, (tuple, list)):
        if not 1 <= len(spec) <= 3:
            raise ValueError(f"Item tuple must have 1-3 fields, got {len(spec)}")
        fields = dict(zip(("payload", "context", "wait_for_previous"), spec))
        return ItemSpec(**fields)
    raise TypeError(f"Unsupported item spec type: {type(spec).__name__}")


class JobState(BaseModel):
    """Serializable job-state record reloaded at the start of each pass."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Job identity")
    items: List[Item] = Field(..., description="Fixed-size, ordered item list")
    phase: JobPhase = Field(default=JobPhase.RUNNING, description="Driver state")
    notifier: str = Field(default="print", description="Registered completion notifier name")
    scope_size: int = Field(default=1, ge=1, description="Max items dispatched per pass")
    pass_count: int = Field(default=0, ge=0, description="Passes that dispatched work")
    created_at: datetime = Field(default_factory=datetime.now, description="Job creation time")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last save time")
    completed_at: Optional[datetime] = Field(default=None, description="Completion time")
    notify_error: Optional[str] = Field(
        default=None, description="Error raised by the completion notifier"
    )

    @field_validator("items")
    @classmethod
    def indexes_match_positions(cls, v: List[Item]) -> List[Item]:
        """Validate that item indexes are unique and positional."""
        if not v:
            raise ValueError("a job needs at least one item")
        for position, item in enumerate(v):
            if item.index != position:
                raise ValueError(f"item at position {position} has index {item.index}")
        return v

    @classmethod
    def create(
        cls,
        specs: Sequence[SpecLike],
        notifier: str = "print",
        scope_size: int = 1,
    ) -> "JobState":
        """Build the initial state for a new job from ordered item specs."""
        coerced = [coerce_spec(spec) for spec in specs]
        if not coerced:
            raise ValueError("a job needs at least one item")

        items = [
            Item(
                index=position,
                payload=spec.payload,
                context=spec.context,
                wait_for_previous=spec.wait_for_previous,
            )
            for position, spec in enumerate(coerced)
        ]
        return cls(items=items, notifier=notifier, scope_size=scope_size)

    @property
    def is_complete(self) -> bool:
        return self.phase == JobPhase.COMPLETE

    def counts(self) -> dict:
        """Item counts keyed by ItemState value."""
        result = {state.value: 0 for state in ItemState}
        for item in self.items:
            result[item.state.value] += 1
        return result


class StateTransition(BaseModel):
    """Audit log entry for job and item state changes.

    `item_index` is None for job-level transitions.
    """

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    item_index: Optional[int] = Field(default=None, description="Item index, None for job rows")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that ran the pass")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
