from unittest.mock import patch

import pytest

from batch_relay.cli import main


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def items_file(tmp_path):
    path = tmp_path / "items.yaml"
    path.write_text(
        "- payload: {polls: 1}\n"
        "  context: {name: build}\n"
        "- payload: {fail: submit, error: no capacity}\n"
        "  wait_for_previous: true\n"
    )
    return str(path)


def run_cli(*args):
    with patch("sys.argv", ["batch-relay", *args]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["batch-relay", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


@pytest.mark.parametrize("command", ["submit", "run", "pass", "status", "demo"])
def test_cli_subcommand_help(command):
    """Test subcommand help."""
    with patch("sys.argv", ["batch-relay", command, "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_cli_jobs_without_subcommand_shows_help(capsys):
    run_cli("jobs")
    assert "clear" in capsys.readouterr().out


def test_cli_demo(capsys):
    run_cli("demo")
    out = capsys.readouterr().out
    assert "JOB COMPLETE" in out
    assert "Demo finished" in out


def test_cli_submit_simulated(items_file, db_path, capsys):
    """Test submit runs a simulated job to completion."""
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--poll-interval", "0", "--db", db_path,
    )
    out = capsys.readouterr().out
    assert "Created job" in out
    assert ": complete" in out
    assert "SubmitError: no capacity" in out


def test_cli_submit_then_run_and_status(items_file, db_path, capsys):
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--no-process", "--db", db_path,
    )
    assert ": running" in capsys.readouterr().out

    run_cli("status", "--db", db_path)
    out = capsys.readouterr().out
    assert "Running:              1" in out
    assert "Scheduled passes:     1" in out

    run_cli("run", "--remote", "simulated", "--poll-interval", "0", "--db", db_path)
    out = capsys.readouterr().out
    assert "Jobs completed:       1" in out


def test_cli_status_for_job(items_file, db_path, capsys):
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--poll-interval", "0", "--db", db_path,
    )
    job_line = [line for line in capsys.readouterr().out.splitlines() if line.startswith("Job ")][-1]
    job_id = job_line.split()[1].rstrip(":")

    run_cli("status", job_id, "--db", db_path)
    out = capsys.readouterr().out
    assert f"JOB {job_id}" in out
    assert "succeeded" in out
    assert "SubmitError: no capacity" in out


def test_cli_pass_single(items_file, db_path, capsys):
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--no-process", "--db", db_path,
    )
    job_id = capsys.readouterr().out.split("Created job ")[1].split()[0]

    run_cli("pass", job_id, "--remote", "simulated", "--db", db_path)
    assert f"Job {job_id}: awaiting_next_pass" in capsys.readouterr().out


def test_cli_pass_for_completed_job_exits_1(items_file, db_path, capsys):
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--poll-interval", "0", "--db", db_path,
    )
    job_id = capsys.readouterr().out.split("Created job ")[1].split()[0]

    with patch("sys.argv", ["batch-relay", "pass", job_id, "--remote", "simulated", "--db", db_path]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert f"No claimable pass for job {job_id}" in capsys.readouterr().out


def test_cli_unknown_job_exits_1(db_path, capsys):
    with patch("sys.argv", ["batch-relay", "status", "missing-job", "--db", db_path]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "missing-job" in capsys.readouterr().out


def test_cli_missing_items_file_exits_1(tmp_path, db_path, capsys):
    with patch("sys.argv", [
        "batch-relay", "submit", "--items", str(tmp_path / "nope.yaml"), "--db", db_path,
    ]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out


def test_cli_jobs_clear(items_file, db_path, capsys):
    run_cli(
        "submit", "--items", items_file, "--remote", "simulated",
        "--no-process", "--db", db_path,
    )
    run_cli("jobs", "clear", "--db", db_path)
    assert "Cleared 1 jobs" in capsys.readouterr().out
