"""
Unit tests for the scheduler.

Tests cover:
- The job state machine (idle -> running -> succeeded|failed -> idle)
- Overlap protection through the run-lock
- The scheduling loop and shutdown
"""

import asyncio
import signal
from datetime import timedelta

import pytest

from tiervault.locks import RunLock
from tiervault.models import RunReport
from tiervault.scheduler import ScheduledJob, Scheduler
from tiervault.types import JobState, RunStatus

TICK = timedelta(milliseconds=10)


@pytest.fixture
def lock(tmp_path) -> RunLock:
    return RunLock("tiering", tmp_path, enable_tracing=False)


def make_job(name, func, lock, *, interval=TICK, run_on_start=True) -> ScheduledJob:
    return ScheduledJob(
        name, interval, func, lock, run_on_start=run_on_start, enable_tracing=False
    )


async def succeed(cancel_event: asyncio.Event) -> RunReport:
    return RunReport(job="tiering").finalize()


class TestScheduledJob:
    """Tests for ScheduledJob.trigger."""

    def test_interval_must_be_positive(self, lock):
        """Test a zero interval is rejected."""
        with pytest.raises(ValueError, match="interval"):
            make_job("tiering", succeed, lock, interval=timedelta(0))

    async def test_successful_run(self, lock):
        """Test a successful run returns to idle with outcome succeeded."""
        job = make_job("tiering", succeed, lock)

        report = await job.trigger()

        assert report.status is RunStatus.SUCCEEDED
        assert job.state is JobState.IDLE
        assert job.last_outcome is JobState.SUCCEEDED
        assert job.last_report is report
        assert job.runs == 1
        assert not lock.held

    async def test_failed_report_marks_job_failed(self, lock):
        """Test a run whose report failed is a failed outcome."""

        async def failing_run(cancel_event):
            report = RunReport(job="tiering")
            report.fail("database unreachable")
            return report.finalize()

        job = make_job("tiering", failing_run, lock)

        await job.trigger()

        assert job.last_outcome is JobState.FAILED
        assert job.state is JobState.IDLE

    async def test_exception_becomes_failed_report(self, lock):
        """Test an exception in the job is captured, not raised."""

        async def crash(cancel_event):
            raise RuntimeError("unexpected")

        job = make_job("tiering", crash, lock)

        report = await job.trigger()

        assert report.status is RunStatus.FAILED
        assert report.error == "unexpected"
        assert report.error_type == "RuntimeError"
        assert job.last_outcome is JobState.FAILED
        assert not lock.held

    async def test_overlapping_trigger_rejected(self, lock):
        """Test a trigger while running is recorded as already running."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(cancel_event):
            started.set()
            await release.wait()
            return RunReport(job="tiering").finalize()

        job = make_job("tiering", slow, lock)
        first = asyncio.create_task(job.trigger())
        await started.wait()

        second = await job.trigger()
        release.set()
        first_report = await first

        assert second.status is RunStatus.ALREADY_RUNNING
        assert "already running" in second.error
        assert first_report.status is RunStatus.SUCCEEDED
        assert job.runs == 1

    async def test_lock_held_by_other_job_rejected(self, lock, tmp_path):
        """Test jobs sharing a lock never overlap."""
        other_holder = RunLock("tiering", tmp_path, enable_tracing=False)
        await other_holder.try_acquire()
        job = make_job("tiering", succeed, lock)

        report = await job.trigger()

        assert report.status is RunStatus.ALREADY_RUNNING
        assert job.runs == 0
        await other_holder.release()

    async def test_cancel_event_passed_through(self, lock):
        """Test the job receives the cancel event."""
        seen = []

        async def capture(cancel_event):
            seen.append(cancel_event)
            return RunReport(job="tiering").finalize()

        event = asyncio.Event()
        await make_job("tiering", capture, lock).trigger(event)

        assert seen == [event]


class TestScheduler:
    """Tests for Scheduler."""

    def test_duplicate_job_names_rejected(self, lock):
        """Test job names must be unique."""
        job = make_job("tiering", succeed, lock)

        with pytest.raises(ValueError, match="unique"):
            Scheduler([job, make_job("tiering", succeed, lock)])

    def test_job_lookup(self, lock):
        """Test jobs can be looked up by name."""
        job = make_job("tiering", succeed, lock)
        scheduler = Scheduler([job])

        assert scheduler.job("tiering") is job
        with pytest.raises(KeyError):
            scheduler.job("backup")

    async def test_runs_until_stopped(self, tmp_path):
        """Test jobs repeat on their interval and stop after the current run."""
        runs = []
        scheduler = None

        async def counting(cancel_event):
            runs.append(cancel_event)
            if len(runs) == 3:
                scheduler.stop()
            return RunReport(job="tiering").finalize()

        job = make_job("tiering", counting, RunLock("tiering", tmp_path, enable_tracing=False))
        scheduler = Scheduler([job])

        await asyncio.wait_for(scheduler.run_forever(handle_signals=False), timeout=5)

        assert len(runs) == 3
        assert all(event is scheduler.shutdown_event for event in runs)
        assert scheduler.is_shutting_down

    async def test_jobs_run_independently(self, tmp_path):
        """Test a slow job does not delay another job."""
        fast_runs = []
        scheduler = None

        async def slow(cancel_event):
            await cancel_event.wait()
            return RunReport(job="backup").finalize()

        async def fast(cancel_event):
            fast_runs.append(1)
            if len(fast_runs) == 3:
                scheduler.stop()
            return RunReport(job="tiering").finalize()

        scheduler = Scheduler(
            [
                make_job("backup", slow, RunLock("backup", tmp_path, enable_tracing=False)),
                make_job("tiering", fast, RunLock("tiering", tmp_path, enable_tracing=False)),
            ]
        )

        await asyncio.wait_for(scheduler.run_forever(handle_signals=False), timeout=5)

        assert len(fast_runs) == 3
        assert scheduler.job("backup").runs == 1

    async def test_run_on_start_false_waits(self, lock):
        """Test a job without run_on_start waits for its first interval."""
        runs = []

        async def record(cancel_event):
            runs.append(1)
            return RunReport(job="tiering").finalize()

        job = make_job("tiering", record, lock, interval=timedelta(hours=1), run_on_start=False)
        scheduler = Scheduler([job])
        asyncio.get_running_loop().call_later(0.05, scheduler.stop)

        await asyncio.wait_for(scheduler.run_forever(handle_signals=False), timeout=5)

        assert runs == []

    def test_signal_requests_shutdown(self, lock):
        """Test SIGTERM sets the shutdown event."""
        scheduler = Scheduler([make_job("tiering", succeed, lock)])

        scheduler._handle_signal(signal.SIGTERM)

        assert scheduler.is_shutting_down
