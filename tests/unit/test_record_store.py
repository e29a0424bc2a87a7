"""
Unit tests for mediaflow/services/record_store.py

Tests record creation, conditional atomic updates and stale-record lookup
against in-memory SQLite.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from mediaflow.core.errors import DuplicateJobError, JobNotFoundError, RecordStoreError
from mediaflow.models.job import ACTIVE_STATES, JobState, ResultStatus


class TestCreateAndGet:
    @pytest.mark.unit
    def test_create_returns_submitted_record(self, store, job_snapshot, fake_clock):
        record = store.create(job_snapshot)

        assert record.id == job_snapshot.id
        assert record.state == JobState.SUBMITTED
        assert record.progress == 0
        assert record.result_status == ResultStatus.PENDING
        assert record.failure_reason is None
        assert record.created_at.replace(tzinfo=None) == fake_clock.now().replace(tzinfo=None)

    @pytest.mark.unit
    def test_get_round_trips_identity_fields(self, store, submitted_job):
        record = store.get(submitted_job.id)

        assert record.owner_id == submitted_job.owner_id
        assert record.group_id == submitted_job.group_id
        assert record.media_ref == submitted_job.media_ref
        assert record.original_filename == "holiday.mp4"

    @pytest.mark.unit
    def test_create_duplicate_id(self, store, submitted_job, job_snapshot):
        with pytest.raises(DuplicateJobError) as exc_info:
            store.create(job_snapshot)

        assert exc_info.value.reason == "exists"

    @pytest.mark.unit
    def test_get_missing(self, store):
        with pytest.raises(JobNotFoundError):
            store.get("missing")


class TestAtomicUpdate:
    @pytest.mark.unit
    def test_update_applies_fields_and_refreshes_timestamp(self, store, submitted_job, fake_clock):
        fake_clock.advance(5)

        record = store.atomic_update(
            submitted_job.id,
            {"state": JobState.PROCESSING, "progress": 20},
            expected_states=(JobState.SUBMITTED,),
        )

        assert record.state == JobState.PROCESSING
        assert record.progress == 20
        assert record.updated_at.replace(tzinfo=None) == fake_clock.now().replace(tzinfo=None)
        assert record.updated_at > record.created_at

    @pytest.mark.unit
    def test_state_guard_blocks_update(self, store, submitted_job):
        result = store.atomic_update(
            submitted_job.id,
            {"progress": 20},
            expected_states=(JobState.PROCESSING,),
        )

        assert result is None
        assert store.get(submitted_job.id).progress == 0

    @pytest.mark.unit
    def test_progress_never_decreases(self, store, processing_job):
        result = store.atomic_update(processing_job.id, {"progress": 20})

        assert result is None
        assert store.get(processing_job.id).progress == 40

    @pytest.mark.unit
    def test_same_progress_is_allowed(self, store, processing_job):
        result = store.atomic_update(
            processing_job.id,
            {"state": JobState.FAILED, "progress": 40, "failure_reason": "timeout"},
        )

        assert result.state == JobState.FAILED

    @pytest.mark.unit
    def test_terminal_record_is_not_reopened(self, store, processing_job):
        store.atomic_update(
            processing_job.id,
            {"state": JobState.FAILED, "failure_reason": "interrupted"},
            expected_states=ACTIVE_STATES,
        )

        again = store.atomic_update(
            processing_job.id,
            {"state": JobState.PROCESSING},
            expected_states=ACTIVE_STATES,
        )

        assert again is None
        assert store.get(processing_job.id).failure_reason == "interrupted"

    @pytest.mark.unit
    def test_completion_stores_result_metadata(self, store, processing_job):
        metadata = {"duration": 120, "width": 1920, "height": 1080, "bitrate": 4000, "codec": "h264"}

        record = store.atomic_update(
            processing_job.id,
            {
                "state": JobState.COMPLETED,
                "progress": 100,
                "result_status": ResultStatus.FLAGGED,
                "result_metadata": metadata,
            },
        )

        assert record.result_status == ResultStatus.FLAGGED
        assert store.get(processing_job.id).result_metadata == metadata

    @pytest.mark.unit
    def test_unknown_job(self, store):
        with pytest.raises(JobNotFoundError):
            store.atomic_update("missing", {"progress": 10})

    @pytest.mark.unit
    def test_immutable_fields_rejected(self, store, submitted_job):
        with pytest.raises(ValueError, match="owner_id"):
            store.atomic_update(submitted_job.id, {"owner_id": "someone-else"})

    @pytest.mark.unit
    def test_database_error_is_wrapped(self, store, submitted_job):
        with patch(
            "sqlalchemy.orm.Session.execute",
            side_effect=OperationalError("UPDATE jobs", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(RecordStoreError, match="disk I/O error"):
                store.atomic_update(submitted_job.id, {"progress": 10})


class TestFindUnfinished:
    @pytest.mark.unit
    def test_lists_only_active_states(self, store, processing_job, job_snapshot):
        done = store.create(job_snapshot.model_copy(update={"id": "done-job"}))
        store.atomic_update(done.id, {"state": JobState.FAILED, "failure_reason": "cancelled"})
        waiting = store.create(job_snapshot.model_copy(update={"id": "waiting-job"}))

        unfinished = {record.id for record in store.find_unfinished()}

        assert unfinished == {processing_job.id, waiting.id}

    @pytest.mark.unit
    def test_updated_before_filters_recent_records(self, store, processing_job, job_snapshot, fake_clock):
        fake_clock.advance(120)
        fresh = store.create(job_snapshot.model_copy(update={"id": "fresh-job"}))

        stale = store.find_unfinished(updated_before=fake_clock.now() - timedelta(seconds=60))

        assert [record.id for record in stale] == [processing_job.id]
        assert fresh.id not in {record.id for record in stale}
