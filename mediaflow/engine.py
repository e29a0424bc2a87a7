"""
Engine facade used by the HTTP and real-time layers.

Wires the record store, classifier, pipeline, scheduler and notification
hub together and exposes submit / get_record / subscribe. Job identities are
never reused: resubmitting an ID that is running or already has a record is
rejected with DuplicateJobError.
"""

import asyncio

import structlog

from mediaflow.core.clock import Clock, system_clock
from mediaflow.core.config import Settings, settings as default_settings
from mediaflow.core.errors import DuplicateJobError, SchedulerClosedError
from mediaflow.schemas.job import JobSnapshot
from mediaflow.services.classifier import Classifier, RandomClassifier
from mediaflow.services.notifications import NotificationHub, Subscription
from mediaflow.services.record_store import RecordStore
from mediaflow.tasks.pipeline import Pipeline, build_default_pipeline
from mediaflow.tasks.runner import INTERRUPTED_REASON
from mediaflow.tasks.scheduler import JobScheduler, RunnerHandle

logger = structlog.get_logger()


class MediaEngine:
    def __init__(
        self,
        store: RecordStore,
        classifier: Classifier | None = None,
        hub: NotificationHub | None = None,
        clock: Clock = system_clock,
        config: Settings | None = None,
        pipeline: Pipeline | None = None,
    ) -> None:
        self.config = config or default_settings
        self.store = store
        self.hub = hub or NotificationHub(self.config.subscriber_buffer_size)
        self.classifier = classifier or RandomClassifier(self.config.flag_threshold)
        self.pipeline = pipeline or build_default_pipeline(self.classifier)
        self.scheduler = JobScheduler(
            store,
            self.pipeline,
            self.hub,
            clock=clock,
            stage_delay=self.config.stage_delay_seconds,
            watchdog_interval=self.config.watchdog_interval_seconds,
            watchdog_poll=self.config.watchdog_poll_seconds,
        )

    async def start(self, watchdog: bool = True) -> list[str]:
        """Fail records orphaned by a previous process, then start the watchdog."""
        recovered = await self.scheduler.recover_orphans(INTERRUPTED_REASON)
        if watchdog:
            self.scheduler.start()
        logger.info("engine_started", recovered=len(recovered), checkpoints=self.pipeline.checkpoints)
        return recovered

    async def submit(
        self,
        job_id: str,
        owner_id: str,
        group_id: str,
        media_ref: str,
        original_filename: str | None = None,
    ) -> RunnerHandle:
        if self.scheduler.closed:
            raise SchedulerClosedError("Engine is shutting down")
        if self.scheduler.is_active(job_id):
            logger.info("job_rejected_duplicate", job_id=job_id)
            raise DuplicateJobError(job_id)

        record = await asyncio.to_thread(
            self.store.create,
            JobSnapshot(
                id=job_id,
                owner_id=owner_id,
                group_id=group_id,
                media_ref=media_ref,
                original_filename=original_filename,
            ),
        )

        try:
            return self.scheduler.submit(record)
        except SchedulerClosedError:
            await self.scheduler.mark_failed(record, INTERRUPTED_REASON)
            raise

    async def get_record(self, job_id: str) -> JobSnapshot:
        return await asyncio.to_thread(self.store.get, job_id)

    def subscribe(self, owner_id: str, group_id: str) -> Subscription:
        return self.hub.subscribe(owner_id, group_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)

    def cancel(self, job_id: str) -> bool:
        return self.scheduler.cancel(job_id)

    def active_jobs(self) -> frozenset[str]:
        return self.scheduler.active_jobs()

    async def shutdown(self, timeout: float | None = None) -> None:
        if timeout is None:
            timeout = self.config.shutdown_timeout_seconds
        await self.scheduler.shutdown(timeout)
        self.hub.close()
        logger.info("engine_stopped")
