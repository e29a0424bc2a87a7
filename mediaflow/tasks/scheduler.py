"""
Job scheduler: admission, active-runner registry, watchdog and shutdown drain.

The registry maps job ID to the handle of its live runner. It is the only
structure mutated from several places (admission and each runner's exit
path), so every access goes through ``self._lock``. The record store stays
the source of truth for terminal outcomes; the registry only answers "is a
runner alive for this job right now".
"""

import asyncio
import threading
from datetime import timedelta

import structlog

from mediaflow.core.clock import Clock, system_clock
from mediaflow.core.errors import DuplicateJobError, SchedulerClosedError
from mediaflow.models.job import ACTIVE_STATES, JobState
from mediaflow.schemas.job import JobSnapshot, ProgressEvent
from mediaflow.services.notifications import EventSink
from mediaflow.services.record_store import RecordStore
from mediaflow.tasks.pipeline import Pipeline
from mediaflow.tasks.runner import INTERRUPTED_REASON, TIMEOUT_REASON, JobRunner

logger = structlog.get_logger()

# Time granted to aborted runners for their FAILED write during shutdown
FINALIZE_GRACE_SECONDS = 5.0


class RunnerHandle:
    """Caller-side view of one submitted job's runner."""

    def __init__(self, runner: JobRunner, task: asyncio.Task) -> None:
        self.runner = runner
        self.task = task

    @property
    def job_id(self) -> str:
        return self.runner.job_id

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> JobSnapshot | None:
        """Terminal snapshot, or None if the terminal write could not be persisted."""
        return await asyncio.shield(self.task)


class JobScheduler:
    def __init__(
        self,
        store: RecordStore,
        pipeline: Pipeline,
        events: EventSink,
        clock: Clock = system_clock,
        stage_delay: float = 1.0,
        watchdog_interval: float = 60.0,
        watchdog_poll: float = 5.0,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._events = events
        self._clock = clock
        self._stage_delay = stage_delay
        self.watchdog_interval = watchdog_interval
        self.watchdog_poll = watchdog_poll

        self._active: dict[str, RunnerHandle] = {}
        self._admitted: set[str] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._watchdog_task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, job: JobSnapshot) -> RunnerHandle:
        """
        Start a runner for ``job`` without waiting for it.

        The registry entry is inserted before the runner task gets a chance
        to execute, so a concurrent submit of the same ID is always rejected.
        """
        with self._lock:
            if self._closed:
                raise SchedulerClosedError("Scheduler is shutting down")
            if job.id in self._active:
                logger.info("job_rejected_duplicate", job_id=job.id)
                raise DuplicateJobError(job.id)

            runner = JobRunner(
                job,
                self._store,
                self._pipeline,
                self._events,
                clock=self._clock,
                stage_delay=self._stage_delay,
            )
            task = asyncio.create_task(self._drive(runner), name=f"job-runner-{job.id}")
            handle = RunnerHandle(runner, task)
            self._active[job.id] = handle
            self._admitted.add(job.id)

        task.add_done_callback(self._on_runner_done)
        logger.info("job_submitted", job_id=job.id, owner_id=job.owner_id, group_id=job.group_id)
        return handle

    def cancel(self, job_id: str) -> bool:
        """Best-effort: the runner stops after its current stage."""
        with self._lock:
            handle = self._active.get(job_id)
        if handle is None:
            logger.info("cancel_ignored", job_id=job_id, reason="not_active")
            return False
        handle.runner.request_cancel()
        logger.info("cancel_requested", job_id=job_id)
        return True

    def active_jobs(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._active)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def get_handle(self, job_id: str) -> RunnerHandle | None:
        with self._lock:
            return self._active.get(job_id)

    async def _drive(self, runner: JobRunner) -> JobSnapshot | None:
        try:
            return await runner.run()
        except asyncio.CancelledError:
            # Cancelled from outside the scheduler; the runner already wrote FAILED
            logger.warning("runner_cancelled_externally", job_id=runner.job_id)
            return runner.outcome
        finally:
            self._release(runner)

    def _release(self, runner: JobRunner) -> None:
        with self._lock:
            handle = self._active.get(runner.job_id)
            if handle is not None and handle.runner is runner:
                del self._active[runner.job_id]

    def _on_runner_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("runner_task_cancelled", task=task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("runner_task_crashed", task=task.get_name(), error=str(exc))

    def _abort(self, handle: RunnerHandle, reason: str) -> None:
        handle.runner.mark_aborted(reason)
        handle.task.cancel()

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog_loop(), name="job-watchdog")
            logger.info(
                "watchdog_started",
                interval=self.watchdog_interval,
                poll=self.watchdog_poll,
            )

    async def _watchdog_loop(self) -> None:
        while not self._closed:
            await self._clock.sleep(self.watchdog_poll)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("watchdog_sweep_failed", error=str(e))

    async def sweep(self) -> list[str]:
        """
        One watchdog pass. Returns the IDs of jobs failed with "timeout".

        Live runners that have not completed a stage within the interval are
        aborted (the runner writes its own FAILED record). Unfinished records
        with no live runner and no update within the interval are failed
        directly in the store.
        """
        timed_out: list[str] = []
        now = self._clock.monotonic()

        with self._lock:
            handles = list(self._active.values())

        for handle in handles:
            runner = handle.runner
            if handle.done() or runner.aborting:
                continue
            idle = now - runner.last_progress_at
            if idle > self.watchdog_interval:
                logger.warning("job_stalled", job_id=runner.job_id, idle_seconds=round(idle, 1))
                self._abort(handle, TIMEOUT_REASON)
                timed_out.append(runner.job_id)

        cutoff = self._clock.now() - timedelta(seconds=self.watchdog_interval)
        stale = await asyncio.to_thread(self._store.find_unfinished, cutoff)
        for record in stale:
            if self.is_active(record.id):
                continue
            if await self.mark_failed(record, TIMEOUT_REASON):
                timed_out.append(record.id)

        return timed_out

    async def mark_failed(self, record: JobSnapshot, reason: str) -> JobSnapshot | None:
        """Fail a record that has no live runner, and notify its owner."""
        snapshot = await asyncio.to_thread(
            self._store.atomic_update,
            record.id,
            {
                "state": JobState.FAILED,
                "failure_reason": reason,
                "completed_at": self._clock.now(),
            },
            ACTIVE_STATES,
        )
        if snapshot is None:
            return None

        logger.warning(
            "orphan_job_failed",
            job_id=record.id,
            reason=reason,
            progress=snapshot.progress,
        )
        try:
            self._events.publish(ProgressEvent.from_snapshot(snapshot, reason))
        except Exception as e:
            logger.error("event_publish_failed", job_id=record.id, error=str(e))
        return snapshot

    async def recover_orphans(
        self, reason: str = INTERRUPTED_REASON, job_ids: set[str] | None = None
    ) -> list[str]:
        """
        Fail unfinished records that no runner in this process owns.

        With ``job_ids`` only those records are considered; otherwise every
        unfinished record in the store is.
        """
        recovered: list[str] = []
        for record in await asyncio.to_thread(self._store.find_unfinished):
            if job_ids is not None and record.id not in job_ids:
                continue
            if self.is_active(record.id):
                continue
            if await self.mark_failed(record, reason):
                recovered.append(record.id)
        if recovered:
            logger.info("orphan_jobs_recovered", count=len(recovered), reason=reason)
        return recovered

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, timeout: float = 10.0) -> None:
        """
        Stop admitting jobs and drain in-flight runners.

        Runners still active after ``timeout`` are aborted and fail with
        "interrupted". Unfinished records of jobs admitted here and left
        without a runner are failed the same way.
        """
        with self._lock:
            self._closed = True
            handles = list(self._active.values())

        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            self._watchdog_task = None

        logger.info("scheduler_draining", jobs=len(handles), timeout=timeout)

        if handles:
            tasks = {handle.task for handle in handles}
            _, pending = await asyncio.wait(tasks, timeout=timeout)

            interrupted = [handle for handle in handles if handle.task in pending]
            for handle in interrupted:
                logger.warning("job_interrupted", job_id=handle.job_id)
                self._abort(handle, INTERRUPTED_REASON)
            if interrupted:
                _, stuck = await asyncio.wait(
                    {handle.task for handle in interrupted}, timeout=FINALIZE_GRACE_SECONDS
                )
                if stuck:
                    logger.error("jobs_not_finalized", count=len(stuck))

        try:
            await self.recover_orphans(INTERRUPTED_REASON, job_ids=set(self._admitted))
        except Exception as e:
            logger.error("shutdown_recovery_failed", error=str(e))

        logger.info("scheduler_stopped")
