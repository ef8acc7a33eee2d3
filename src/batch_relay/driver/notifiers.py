"""Completion notifier implementations.

Notifiers are looked up by name at every pass, so the same callback is used
however many workers a job passes through. Rendering of richer reports
(email, dashboards) belongs in callers; these cover console, file and
in-memory sinks.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .backends import CompletionNotifier
from .models import Item, ItemState


def summarize_items(items: List[Item]) -> Dict[str, Any]:
    """Build a JSON-ready summary of a finished item list."""
    counts = {state.value: 0 for state in ItemState}
    entries = []
    for item in items:
        counts[item.state.value] += 1
        entries.append({
            "index": item.index,
            "state": item.state.value,
            "context": item.context,
            "handle": item.handle,
            "status": item.status.model_dump() if item.status else None,
            "failure": item.failure.model_dump(mode="json") if item.failure else None,
            "poll_count": item.poll_count,
        })
    return {"counts": counts, "items": entries}


class PrintNotifier(CompletionNotifier):
    """Prints start and summary blocks to stdout."""

    def on_batch_started(self, job_id: str) -> None:
        print(f"Job {job_id[:8]}... started")

    def on_complete(self, job_id: str, items: List[Item]) -> None:
        summary = summarize_items(items)
        counts = summary["counts"]

        print("\n" + "=" * 60)
        print(f"JOB COMPLETE ({job_id[:8]}...)")
        print("=" * 60)
        print(f"Succeeded:            {counts[ItemState.SUCCEEDED.value]}")
        print(f"Failed:               {counts[ItemState.FAILED.value]}")
        print(f"Total:                {len(items)}")
        print("=" * 60)

        for item in items:
            if item.state != ItemState.FAILED:
                continue
            if item.failure is not None:
                reason = f"{item.failure.error_type}: {item.failure.message}"
            else:
                reason = item.status.error_message
            print(f"  ✗ Item {item.index}: {reason}")


class JsonSummaryNotifier(CompletionNotifier):
    """Writes `<job_id>_summary.json` into an output directory on completion."""

    def __init__(self, output_dir: str = "output"):
        self.output_dir = Path(output_dir)

    def on_batch_started(self, job_id: str) -> None:
        pass

    def on_complete(self, job_id: str, items: List[Item]) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

        summary = summarize_items(items)
        summary["job_id"] = job_id
        summary["completed_at"] = datetime.now().isoformat()

        with open(self.summary_path(job_id), "w") as f:
            json.dump(summary, f, indent=2, default=str)

    def summary_path(self, job_id: str) -> Path:
        return self.output_dir / f"{job_id}_summary.json"


class RecordingNotifier(CompletionNotifier):
    """Keeps every notification in memory."""

    def __init__(self):
        self.started: List[str] = []
        self.completed: List[Tuple[str, List[Item]]] = []

    def on_batch_started(self, job_id: str) -> None:
        self.started.append(job_id)

    def on_complete(self, job_id: str, items: List[Item]) -> None:
        self.completed.append((job_id, [item.model_copy(deep=True) for item in items]))
