"""
Scheduler for the tiering and backup jobs.

Each job runs in its own asyncio task on its own interval, so a long
tiering run never delays a backup and vice versa. A job never overlaps
with itself: every trigger takes the job's RunLock, and a trigger that
finds the lock held is recorded as ``already_running`` instead of waiting.

Job state machine::

    idle -> running -> succeeded | failed -> idle

A failed run is logged and the job simply waits for its next tick; there is
no immediate retry.

On SIGINT/SIGTERM the shared shutdown event is set. Jobs stop after their
current run, and the event is passed to each run as its cancel event, so
an in-flight tiering run stops dispatching new actions.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta

from tiervault.exceptions import InvalidTransitionError
from tiervault.locks import RunLock
from tiervault.models import RunReport
from tiervault.observability import ATTR_JOB_NAME, ATTR_RUN_ID, Tracer, create_tracer
from tiervault.types import JobState, RunStatus

logger = logging.getLogger(__name__)

JobFunc = Callable[[asyncio.Event], Awaitable[RunReport]]

_ALLOWED_TRANSITIONS = {
    JobState.IDLE: {JobState.RUNNING},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED},
    JobState.SUCCEEDED: {JobState.IDLE},
    JobState.FAILED: {JobState.IDLE},
}


class ScheduledJob:
    """
    One recurring job guarded by a run-lock.

    Example:
        >>> job = ScheduledJob(
        ...     "tiering",
        ...     timedelta(days=1),
        ...     orchestrator.run_tiering,
        ...     RunLock("tiering", lock_dir),
        ... )
        >>> report = await job.trigger()
    """

    def __init__(
        self,
        name: str,
        interval: timedelta,
        func: JobFunc,
        lock: RunLock,
        *,
        run_on_start: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if interval <= timedelta(0):
            raise ValueError(f"interval for job {name} must be positive, got {interval}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._name = name
        self._interval = interval
        self._func = func
        self._lock = lock
        self._run_on_start = run_on_start
        self._state = JobState.IDLE
        self._last_outcome: JobState | None = None
        self._last_report: RunReport | None = None
        self._runs = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def run_on_start(self) -> bool:
        return self._run_on_start

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def last_outcome(self) -> JobState | None:
        """SUCCEEDED or FAILED for the last completed run."""
        return self._last_outcome

    @property
    def last_report(self) -> RunReport | None:
        return self._last_report

    @property
    def runs(self) -> int:
        return self._runs

    def _transition(self, new_state: JobState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._name, self._state.value, new_state.value)
        self._state = new_state

    def _already_running(self) -> RunReport:
        holder = self._lock.holder_pid()
        logger.warning(
            "Job %s already running%s, skipping this trigger",
            self._name,
            f" (pid {holder})" if holder else "",
        )
        report = RunReport(job=self._name, status=RunStatus.ALREADY_RUNNING)
        report.error = f"job {self._name} is already running"
        return report.finalize()

    async def trigger(self, cancel_event: asyncio.Event | None = None) -> RunReport:
        """
        Run the job once unless it is already running.

        Never raises for job failures; the outcome is in the report.
        """
        if self._state is not JobState.IDLE or await self._lock.try_acquire() is None:
            return self._already_running()

        cancel_event = cancel_event or asyncio.Event()
        self._transition(JobState.RUNNING)
        self._runs += 1
        try:
            with self._tracer.span("tiervault.scheduler.run", {ATTR_JOB_NAME: self._name}) as span:
                try:
                    report = await self._func(cancel_event)
                except Exception as e:
                    logger.exception("Job %s failed", self._name)
                    report = RunReport(job=self._name)
                    report.fail(e)
                    report.finalize()
                if span is not None:
                    span.set_attribute(ATTR_RUN_ID, report.run_id)
        finally:
            await self._lock.release()

        outcome = JobState.FAILED if report.status is RunStatus.FAILED else JobState.SUCCEEDED
        self._transition(outcome)
        self._last_outcome = outcome
        self._last_report = report
        logger.info("Job %s finished: %s", self._name, report.status.value)
        self._transition(JobState.IDLE)
        return report

    def __repr__(self) -> str:
        return f"ScheduledJob(name={self._name!r}, interval={self._interval}, state={self._state.value})"


class Scheduler:
    """
    Runs scheduled jobs until shutdown.

    Example:
        >>> scheduler = Scheduler([tiering_job, backup_job])
        >>> await scheduler.run_forever()  # returns after SIGINT/SIGTERM
    """

    def __init__(
        self,
        jobs: Sequence[ScheduledJob],
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        names = [job.name for job in jobs]
        if len(names) != len(set(names)):
            raise ValueError(f"job names must be unique, got {names}")
        self._jobs = list(jobs)
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._signal_handlers_registered = False
        self._started_at: datetime | None = None

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    def job(self, name: str) -> ScheduledJob:
        for job in self._jobs:
            if job.name == name:
                return job
        raise KeyError(name)

    def stop(self) -> None:
        """Request shutdown; jobs stop after their current run."""
        if not self._shutdown_event.is_set():
            logger.info("Scheduler shutdown requested")
            self._shutdown_event.set()

    def register_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Stop the scheduler on SIGTERM and SIGINT."""
        if self._signal_handlers_registered:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                logger.warning("Signal handling not supported on this platform for %s", sig.name)
        self._signal_handlers_registered = True

    def unregister_signals(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        if not self._signal_handlers_registered:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, ValueError):
                pass
        self._signal_handlers_registered = False

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down after in-flight work", sig.name)
        self.stop()

    async def _sleep(self, interval: timedelta) -> None:
        """Wait for the interval or until shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval.total_seconds())
        except TimeoutError:
            pass

    async def _run_job(self, job: ScheduledJob) -> None:
        if not job.run_on_start:
            await self._sleep(job.interval)
        while not self._shutdown_event.is_set():
            await job.trigger(self._shutdown_event)
            if self._shutdown_event.is_set():
                break
            await self._sleep(job.interval)
        logger.debug("Job loop %s stopped", job.name)

    async def run_forever(self, *, handle_signals: bool = True) -> None:
        """Run every job on its interval until stop() or a termination signal."""
        if handle_signals:
            self.register_signals()
        self._started_at = datetime.now(UTC)
        logger.info(
            "Scheduler started with jobs: %s",
            ", ".join(f"{job.name} every {job.interval}" for job in self._jobs),
        )
        try:
            tasks = [
                asyncio.create_task(self._run_job(job), name=f"tiervault-{job.name}")
                for job in self._jobs
            ]
            await asyncio.gather(*tasks)
        finally:
            if handle_signals:
                self.unregister_signals()
            logger.info("Scheduler stopped")


__all__ = [
    "JobFunc",
    "ScheduledJob",
    "Scheduler",
]
