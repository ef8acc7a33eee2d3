"""Tests for the pass runner, inline rescheduler and dispatch pool."""

import threading
import time

import pytest

from batch_relay.driver import (
    ConfigError,
    InlineRescheduler,
    JobDriver,
    JobPhase,
    PassRunner,
    ThreadDispatchPool,
)
from batch_relay.remote import SimulatedOperations


@pytest.fixture
def queued_driver(store, pass_queue, operations, notifier):
    """Driver that reschedules through the SQLite pass queue."""
    return JobDriver(
        store=store,
        operations=operations,
        rescheduler=pass_queue,
        notifiers={"recording": notifier},
    )


class TestPassRunner:
    """Test the queue-draining worker loop."""

    def test_runs_job_to_completion(self, queued_driver, pass_queue, store, notifier):
        state = queued_driver.start_job(
            [({"polls": 1},), ({"polls": 2}, None, True)], notifier="recording"
        )
        runner = PassRunner(queued_driver, pass_queue, poll_interval_s=0, worker_id="w1")

        summary = runner.run()

        assert summary.completed_jobs == 1
        assert summary.passes == 6
        assert store.load_job(state.job_id).phase == JobPhase.COMPLETE
        assert len(notifier.completed) == 1
        assert pass_queue.pending_count() == 0

    def test_interleaves_several_jobs(self, queued_driver, pass_queue, store):
        first = queued_driver.start_job([({"polls": 1},)], notifier="recording")
        second = queued_driver.start_job([({"polls": 2},)], notifier="recording")

        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run()

        assert summary.completed_jobs == 2
        assert store.load_job(first.job_id).is_complete
        assert store.load_job(second.job_id).is_complete

    def test_max_passes_stops_early(self, queued_driver, pass_queue, store):
        state = queued_driver.start_job([({"polls": 5},)], notifier="recording")

        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run(max_passes=2)

        assert summary.passes == 2
        assert store.load_job(state.job_id).phase == JobPhase.AWAITING_NEXT_PASS
        assert pass_queue.pending_count() == 1

    def test_empty_queue_returns_immediately(self, queued_driver, pass_queue):
        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run()
        assert summary.passes == 0
        assert summary.idle_waits == 0

    def test_waits_for_delayed_pass(self, store, pass_queue, operations, notifier):
        driver = JobDriver(
            store, operations, pass_queue, {"recording": notifier}, pass_delay_s=0.05
        )
        driver.start_job([({"polls": 1},)], notifier="recording")

        summary = PassRunner(driver, pass_queue, poll_interval_s=0.01).run()

        assert summary.completed_jobs == 1
        assert summary.idle_waits > 0

    def test_missing_job_dropped(self, queued_driver, pass_queue, capsys):
        pass_queue.schedule("ghost")

        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run()

        assert summary.missing_jobs == 1
        assert summary.passes == 0
        assert pass_queue.pending_count() == 0
        assert "ghost" in capsys.readouterr().out

    def test_stale_claims_reset_on_start(self, queued_driver, pass_queue, store):
        state = queued_driver.start_job([({"polls": 0},)], notifier="recording")
        pass_queue.claim("crashed-worker")
        with pass_queue.db.conn:
            pass_queue.db.conn.execute(
                "UPDATE scheduled_passes SET claimed_at = '2000-01-01T00:00:00'"
            )

        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run()

        assert summary.reset_claims == 1
        assert store.load_job(state.job_id).is_complete

    def test_leftover_pass_for_complete_job_not_counted(
        self, queued_driver, pass_queue, store, notifier
    ):
        """Test a pass on an already-complete job is not a new completion."""
        state = queued_driver.start_job([({"polls": 1},)], notifier="recording")
        queued_driver.drive(state.job_id)
        assert store.load_job(state.job_id).is_complete
        assert pass_queue.pending_count() == 1

        summary = PassRunner(queued_driver, pass_queue, poll_interval_s=0).run()

        assert summary.passes == 1
        assert summary.completed_jobs == 0
        assert pass_queue.pending_count() == 0
        assert len(notifier.completed) == 1

    def test_error_releases_claim(self, store, pass_queue, notifier):
        """Test an unexpected error propagates without leaking the claim."""
        driver = JobDriver(store, SimulatedOperations(), pass_queue, {"recording": notifier})
        state = driver.start_job([({"polls": 1},)], notifier="recording")
        driver.notifiers.clear()

        with pytest.raises(ConfigError):
            PassRunner(driver, pass_queue, poll_interval_s=0).run()

        assert pass_queue.claim("other") == state.job_id


class TestInlineRescheduler:
    """Test the in-process rescheduler."""

    def test_run_until_idle(self, driver, rescheduler, notifier):
        state = driver.start_job([({"polls": 1},), ({"polls": 1},)], notifier="recording")

        assert rescheduler.run_until_idle(driver) == 5
        assert rescheduler.pending() == []
        assert notifier.completed[0][0] == state.job_id

    def test_dedups_pending_passes(self):
        rescheduler = InlineRescheduler()
        rescheduler.schedule("a")
        rescheduler.schedule("b")
        rescheduler.schedule("a", delay_s=0.01)

        assert rescheduler.pending() == ["a", "b"]

    def test_max_passes(self, driver, rescheduler):
        driver.start_job([({"polls": 3},)], notifier="recording")

        assert rescheduler.run_until_idle(driver, max_passes=2) == 2
        assert len(rescheduler.pending()) == 1

    def test_honours_delay(self, store, operations, notifier):
        rescheduler = InlineRescheduler()
        driver = JobDriver(
            store, operations, rescheduler, {"recording": notifier}, pass_delay_s=0.02
        )
        driver.start_job([({"polls": 1},)], notifier="recording")

        started = time.monotonic()
        rescheduler.run_until_idle(driver)

        assert time.monotonic() - started >= 0.04


class TestThreadDispatchPool:
    """Test the scope dispatch pool."""

    def test_map_preserves_order(self):
        with ThreadDispatchPool(n_workers=4) as pool:
            assert pool.map(lambda x: x * 2, [3, 1, 2]) == [6, 2, 4]

    def test_map_runs_concurrently(self):
        barrier = threading.Barrier(3, timeout=5)

        def wait(n):
            barrier.wait()
            return n

        with ThreadDispatchPool(n_workers=3) as pool:
            assert pool.map(wait, [1, 2, 3]) == [1, 2, 3]

    def test_map_requires_context(self):
        with pytest.raises(RuntimeError):
            ThreadDispatchPool().map(str, [1])

    def test_shutdown_on_exit(self):
        pool = ThreadDispatchPool()
        with pool:
            pass
        with pytest.raises(RuntimeError):
            pool.map(str, [1])

    def test_errors_propagate(self):
        def boom(n):
            raise ValueError(n)

        with ThreadDispatchPool(n_workers=2) as pool:
            with pytest.raises(ValueError):
                pool.map(boom, [1, 2])

