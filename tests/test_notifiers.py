"""Tests for completion notifiers."""

import json

from batch_relay.driver import (
    FailureKind,
    Item,
    ItemFailure,
    JsonSummaryNotifier,
    OperationStatus,
    PrintNotifier,
    RecordingNotifier,
)
from batch_relay.driver.notifiers import summarize_items


def finished_items():
    return [
        Item(index=0, payload="a", context={"name": "ok"}, handle="h0",
             status=OperationStatus(done=True, message="finished")),
        Item(index=1, payload="b", handle="h1",
             status=OperationStatus(done=True, error_message="exit code 2")),
        Item(index=2, payload="c", failure=ItemFailure(
            kind=FailureKind.SUBMIT, error_type="SubmitError", message="quota exceeded")),
    ]


def test_summarize_items():
    summary = summarize_items(finished_items())

    assert summary["counts"] == {"pending": 0, "submitted": 0, "succeeded": 1, "failed": 2}
    assert [entry["index"] for entry in summary["items"]] == [0, 1, 2]
    assert summary["items"][0]["context"] == {"name": "ok"}
    assert summary["items"][2]["failure"]["kind"] == "submit"
    assert summary["items"][2]["status"] is None


def test_print_notifier(capsys):
    notifier = PrintNotifier()
    notifier.on_batch_started("abcdef1234567890")
    notifier.on_complete("abcdef1234567890", finished_items())

    out = capsys.readouterr().out
    assert "Job abcdef12... started" in out
    assert "JOB COMPLETE" in out
    assert "Succeeded:            1" in out
    assert "Failed:               2" in out
    assert "Item 1: exit code 2" in out
    assert "Item 2: SubmitError: quota exceeded" in out


def test_json_notifier_writes_summary(tmp_path):
    notifier = JsonSummaryNotifier(str(tmp_path / "summaries"))
    notifier.on_batch_started("job-1")
    assert not notifier.summary_path("job-1").exists()

    notifier.on_complete("job-1", finished_items())

    with open(notifier.summary_path("job-1")) as f:
        data = json.load(f)
    assert data["job_id"] == "job-1"
    assert data["counts"]["failed"] == 2
    assert len(data["items"]) == 3
    assert data["items"][1]["status"]["error_message"] == "exit code 2"


def test_recording_notifier_keeps_copies():
    notifier = RecordingNotifier()
    items = finished_items()
    notifier.on_batch_started("job-1")
    notifier.on_complete("job-1", items)

    items[0].poll_count = 99

    assert notifier.started == ["job-1"]
    job_id, recorded = notifier.completed[0]
    assert job_id == "job-1"
    assert recorded[0].poll_count == 0
