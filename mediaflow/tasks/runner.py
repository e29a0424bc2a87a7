"""
Job runner: drives one job through the stage pipeline.

The runner is the only writer of its job's record while it is active. It
moves the record to PROCESSING, persists each stage checkpoint before
publishing the matching progress event, and always resolves to exactly one
terminal write (COMPLETED with the classification result, or FAILED with a
reason and the last persisted progress).
"""

import asyncio
from typing import Any

import structlog

from mediaflow.core.clock import Clock, system_clock
from mediaflow.core.errors import (
    JobCancelledError,
    JobTimeoutError,
    RecordStoreError,
    failure_reason,
)
from mediaflow.models.job import ACTIVE_STATES, JobState
from mediaflow.schemas.job import ClassificationResult, JobSnapshot, ProgressEvent
from mediaflow.services.notifications import EventSink
from mediaflow.services.record_store import RecordStore
from mediaflow.tasks.pipeline import Pipeline, StageContext

logger = structlog.get_logger()

TIMEOUT_REASON = "timeout"
INTERRUPTED_REASON = "interrupted"
CANCELLED_REASON = "cancelled"


class JobRunner:
    def __init__(
        self,
        job: JobSnapshot,
        store: RecordStore,
        pipeline: Pipeline,
        events: EventSink,
        clock: Clock = system_clock,
        stage_delay: float = 1.0,
    ) -> None:
        self.job = job
        self._store = store
        self._pipeline = pipeline
        self._events = events
        self._clock = clock
        self._stage_delay = stage_delay

        self.progress = job.progress
        self.last_progress_at = clock.monotonic()
        self.outcome: JobSnapshot | None = None
        self.error: BaseException | None = None

        self._cancel_requested = False
        self._abort_reason: str | None = None
        self._log = logger.bind(job_id=job.id, owner_id=job.owner_id)

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def aborting(self) -> bool:
        return self._abort_reason is not None

    def request_cancel(self) -> None:
        """Cooperative cancel, honored at the next stage boundary."""
        self._cancel_requested = True

    def mark_aborted(self, reason: str) -> None:
        """Record why the owning task is about to be cancelled. First reason wins."""
        if self._abort_reason is None:
            self._abort_reason = reason

    async def run(self) -> JobSnapshot | None:
        self._log.info("job_started", stages=len(self._pipeline))
        current = self.job

        try:
            current = await self._write(
                {"state": JobState.PROCESSING, "progress": 0, "started_at": self._clock.now()},
                expected_states=(JobState.SUBMITTED,),
            )
            self._touch(current)
            ctx = StageContext(job=current, clock=self._clock, stage_delay=self._stage_delay)

            for stage in self._pipeline:
                if self._cancel_requested:
                    raise JobCancelledError(f"Cancelled before stage {stage.name}")

                result = await stage.run(ctx)

                if stage.produces_result:
                    final = await self._write(
                        {
                            "state": JobState.COMPLETED,
                            "progress": stage.target_progress,
                            "result_status": result.result_status,
                            "result_metadata": result.metadata,
                            "completed_at": self._clock.now(),
                        },
                        expected_states=(JobState.PROCESSING,),
                    )
                    self._touch(final)
                    self.outcome = final
                    self._emit(ProgressEvent.from_snapshot(final, stage.describe(result)))
                    self._log.info(
                        "job_completed",
                        result_status=final.result_status.value,
                        metadata=final.result_metadata,
                    )
                    return final

                current = await self._write(
                    {"progress": stage.target_progress},
                    expected_states=(JobState.PROCESSING,),
                )
                self._touch(current)
                ctx.job = current
                self._emit(ProgressEvent.from_snapshot(current, stage.describe()))
                self._log.info("stage_completed", stage=stage.name, progress=current.progress)

            # Pipeline validation guarantees the final stage returns above
            raise RecordStoreError("Pipeline ended without a result")

        except asyncio.CancelledError:
            reason = self._abort_reason or INTERRUPTED_REASON
            if reason == TIMEOUT_REASON:
                self.error = JobTimeoutError(f"No stage completed for job {self.job_id}")
            self._log.warning("job_aborted", reason=reason, progress=self.progress)
            await self._fail(current, reason)
            if self._abort_reason is None:
                raise
            return self.outcome

        except Exception as e:
            self.error = e
            reason = CANCELLED_REASON if isinstance(e, JobCancelledError) else failure_reason(e)
            self._log.error("job_failed", reason=reason, progress=self.progress)
            await self._fail(current, reason)
            return self.outcome

    async def _write(self, fields: dict[str, Any], expected_states) -> JobSnapshot:
        snapshot = await asyncio.to_thread(
            self._store.atomic_update, self.job_id, fields, expected_states
        )
        if snapshot is None:
            raise RecordStoreError(
                f"Job {self.job_id} is no longer in {[s.value for s in expected_states]}"
            )
        return snapshot

    async def _fail(self, current: JobSnapshot, reason: str) -> None:
        fields = {
            "state": JobState.FAILED,
            "failure_reason": reason,
            "completed_at": self._clock.now(),
        }
        try:
            snapshot = await asyncio.to_thread(
                self._store.atomic_update, self.job_id, fields, ACTIVE_STATES
            )
        except Exception as e:
            # Record may stay PROCESSING; the watchdog store sweep closes it later
            self.error = e
            self._log.error("job_finalize_failed", reason=reason, error=str(e))
            self._emit(
                ProgressEvent(
                    job_id=current.id,
                    owner_id=current.owner_id,
                    group_id=current.group_id,
                    progress=self.progress,
                    state=JobState.FAILED,
                    message=reason,
                )
            )
            return

        if snapshot is None:
            # An in-flight write of ours landed after the abort
            self._log.warning("job_finalize_skipped", reason=reason)
            try:
                self.outcome = await asyncio.to_thread(self._store.get, self.job_id)
            except Exception as e:
                self.error = e
                self._log.error("job_reload_failed", error=str(e))
                return
            if self.outcome.is_terminal:
                self._touch(self.outcome)
                self._emit(ProgressEvent.from_snapshot(self.outcome, self._describe(self.outcome, reason)))
            if self.outcome.state == JobState.COMPLETED:
                self.error = None
                self._log.info("job_completed", result_status=self.outcome.result_status.value)
            return

        self.outcome = snapshot
        self._emit(ProgressEvent.from_snapshot(snapshot, reason))

    def _describe(self, snapshot: JobSnapshot, reason: str) -> str:
        if snapshot.state != JobState.COMPLETED:
            return snapshot.failure_reason or reason
        result = ClassificationResult(
            result_status=snapshot.result_status,
            metadata=snapshot.result_metadata or {},
        )
        return self._pipeline.stages[-1].describe(result)

    def _touch(self, snapshot: JobSnapshot) -> None:
        self.progress = snapshot.progress
        self.last_progress_at = self._clock.monotonic()

    def _emit(self, event: ProgressEvent) -> None:
        try:
            self._events.publish(event)
        except Exception as e:
            self._log.error("event_publish_failed", progress=event.progress, error=str(e))
