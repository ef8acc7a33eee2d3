"""Dispatch step: advance one item by a single submit or poll.

Each call performs exactly one remote interaction:
- Items without a handle are submitted (once, ever)
- Items with a handle are polled and their status overwritten
- Anything raised is captured on the item, which becomes terminal
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .backends import RemoteOperations
from .models import FailureKind, Item, ItemFailure, ItemState, json_roundtrip_error


@dataclass
class DispatchLimits:
    """Guard against operations that never report done."""

    max_polls: int = 1000  # 0 disables the poll-count guard
    max_age_s: float = 0.0  # 0 disables the wall-clock guard


def dispatch(
    item: Item,
    operations: RemoteOperations,
    limits: Optional[DispatchLimits] = None,
    now: Optional[datetime] = None,
) -> ItemState:
    """Perform the submit-or-poll transition for one item.

    Args:
        item: Item to advance (mutated in place)
        operations: Remote submit/poll collaborator
        limits: Optional poll guard; defaults to DispatchLimits()
        now: Clock override for the age guard and timestamps

    Returns:
        The item's state after this step

    Error handling:
    - Submit errors → ItemFailure(kind=submit), no retry
    - Poll errors → ItemFailure(kind=poll), no retry
    - Poll guard exceeded → ItemFailure(kind=timeout)
    """
    if item.is_terminal:
        return item.state

    limits = limits or DispatchLimits()
    now = now or datetime.now()

    if item.handle is None:
        try:
            handle, initial_status = operations.submit(item.payload)
        except Exception as e:
            item.failure = ItemFailure.from_exception(FailureKind.SUBMIT, e)
        else:
            if handle is None:
                problem = "submit returned no handle"
            else:
                problem = json_roundtrip_error(handle)
                if problem:
                    # Later passes poll the stored copy, so it must reload unchanged
                    problem = f"handle {problem}: {handle!r}"[:500]

            if problem:
                item.failure = ItemFailure(
                    kind=FailureKind.SUBMIT,
                    error_type="SubmitError",
                    message=problem,
                )
            else:
                item.handle = handle
                item.status = initial_status
                item.submitted_at = now
    else:
        try:
            status = operations.poll(item.handle)
        except Exception as e:
            item.failure = ItemFailure.from_exception(FailureKind.POLL, e)
        else:
            item.status = status
        item.poll_count += 1

        if not item.is_terminal:
            _apply_limits(item, limits, now)

    if item.is_terminal and item.finished_at is None:
        item.finished_at = now

    return item.state


def _apply_limits(item: Item, limits: DispatchLimits, now: datetime) -> None:
    """Fail a still-running item that exceeded its poll guard."""
    if limits.max_polls and item.poll_count >= limits.max_polls:
        item.failure = ItemFailure(
            kind=FailureKind.TIMEOUT,
            error_type="PollLimitExceeded",
            message=f"not done after {item.poll_count} polls",
        )
        return

    if limits.max_age_s and item.submitted_at is not None:
        age_s = (now - item.submitted_at).total_seconds()
        if age_s >= limits.max_age_s:
            item.failure = ItemFailure(
                kind=FailureKind.TIMEOUT,
                error_type="MaxAgeExceeded",
                message=f"not done {age_s:.0f}s after submit",
            )
