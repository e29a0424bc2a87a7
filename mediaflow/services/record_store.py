"""
Record store adapter: durable job records with single-record atomic updates.

The engine only needs create / get / conditional update. Every mutation is a
single ``UPDATE ... WHERE`` statement so two updates for the same job never
interleave partially, and the WHERE clause carries the state machine guards
(expected states, non-decreasing progress).
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import nullcontext
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import Engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from mediaflow.core.clock import Clock, system_clock
from mediaflow.core.errors import DuplicateJobError, JobNotFoundError, RecordStoreError
from mediaflow.models.job import ACTIVE_STATES, JobRecord, JobState, ResultStatus
from mediaflow.schemas.job import JobSnapshot

logger = structlog.get_logger()

UPDATABLE_FIELDS = frozenset({
    "state",
    "progress",
    "result_status",
    "result_metadata",
    "failure_reason",
    "started_at",
    "completed_at",
})


class RecordStore(ABC):
    """Persistence interface the engine depends on."""

    @abstractmethod
    def create(self, snapshot: JobSnapshot) -> JobSnapshot:
        """Persist a new record. Raises DuplicateJobError if the ID exists."""
        ...

    @abstractmethod
    def get(self, job_id: str) -> JobSnapshot:
        """Return the record. Raises JobNotFoundError if missing."""
        ...

    @abstractmethod
    def atomic_update(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected_states: Iterable[JobState] | None = None,
    ) -> JobSnapshot | None:
        """
        Apply ``fields`` to one record atomically.

        Returns the updated snapshot, or None when the record exists but the
        guard did not hold (state not in ``expected_states``, or the write
        would decrease progress).
        """
        ...

    @abstractmethod
    def find_unfinished(self, updated_before: datetime | None = None) -> list[JobSnapshot]:
        """List records still Submitted/Processing, optionally only stale ones."""
        ...


class SqlRecordStore(RecordStore):
    """SQLAlchemy-backed record store (SQLite or PostgreSQL)."""

    def __init__(self, engine: Engine | None = None, clock: Clock = system_clock) -> None:
        if engine is None:
            from mediaflow.models.base import engine as default_engine

            engine = default_engine
        self._session_factory = sessionmaker(
            bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        self._clock = clock
        # A single SQLite connection is shared between worker threads
        self._lock = threading.Lock() if engine.dialect.name == "sqlite" else nullcontext()

    def create(self, snapshot: JobSnapshot) -> JobSnapshot:
        now = self._clock.now()
        record = JobRecord(
            id=snapshot.id,
            owner_id=snapshot.owner_id,
            group_id=snapshot.group_id,
            media_ref=snapshot.media_ref,
            original_filename=snapshot.original_filename,
            state=JobState.SUBMITTED,
            progress=0,
            result_status=ResultStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        with self._lock, self._session_factory() as db:
            try:
                db.add(record)
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise DuplicateJobError(snapshot.id, reason="exists") from e
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("record_create_failed", job_id=snapshot.id, error=str(e))
                raise RecordStoreError(f"Failed to create job {snapshot.id}: {e}") from e

            logger.info("record_created", job_id=snapshot.id, owner_id=snapshot.owner_id)
            return JobSnapshot.model_validate(record)

    def get(self, job_id: str) -> JobSnapshot:
        with self._lock, self._session_factory() as db:
            try:
                record = db.get(JobRecord, job_id)
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Failed to read job {job_id}: {e}") from e

            if record is None:
                raise JobNotFoundError(job_id)
            return JobSnapshot.model_validate(record)

    def atomic_update(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected_states: Iterable[JobState] | None = None,
    ) -> JobSnapshot | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        stmt = update(JobRecord).where(JobRecord.id == job_id)
        if expected_states is not None:
            stmt = stmt.where(JobRecord.state.in_(list(expected_states)))
        if "progress" in fields:
            stmt = stmt.where(JobRecord.progress <= fields["progress"])
        stmt = stmt.values(**fields, updated_at=self._clock.now())

        with self._lock, self._session_factory() as db:
            try:
                result = db.execute(stmt)
                db.commit()
                record = db.get(JobRecord, job_id, populate_existing=True)
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("record_update_failed", job_id=job_id, error=str(e))
                raise RecordStoreError(f"Failed to update job {job_id}: {e}") from e

            if record is None:
                raise JobNotFoundError(job_id)
            if result.rowcount == 0:
                logger.debug("record_update_skipped", job_id=job_id, state=record.state.value)
                return None
            return JobSnapshot.model_validate(record)

    def find_unfinished(self, updated_before: datetime | None = None) -> list[JobSnapshot]:
        stmt = select(JobRecord).where(JobRecord.state.in_(list(ACTIVE_STATES)))
        if updated_before is not None:
            stmt = stmt.where(JobRecord.updated_at < updated_before)
        stmt = stmt.order_by(JobRecord.created_at)

        with self._lock, self._session_factory() as db:
            try:
                records = db.scalars(stmt).all()
            except SQLAlchemyError as e:
                raise RecordStoreError(f"Failed to list unfinished jobs: {e}") from e
            return [JobSnapshot.model_validate(r) for r in records]
