from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mediaflow.models.job import JobState, ResultStatus


class JobSnapshot(BaseModel):
    """Read model of a persisted job record."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    owner_id: str
    group_id: str
    media_ref: str
    original_filename: str | None = None
    state: JobState = JobState.SUBMITTED
    progress: int = Field(default=0, ge=0, le=100)
    result_status: ResultStatus = ResultStatus.PENDING
    result_metadata: dict[str, Any] | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class ProgressEvent(BaseModel):
    """Transient notification of a job's latest progress or state."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    owner_id: str
    group_id: str
    progress: int = Field(ge=0, le=100)
    state: JobState
    result_status: ResultStatus | None = None
    message: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: JobSnapshot, message: str | None = None) -> "ProgressEvent":
        return cls(
            job_id=snapshot.id,
            owner_id=snapshot.owner_id,
            group_id=snapshot.group_id,
            progress=snapshot.progress,
            state=snapshot.state,
            result_status=snapshot.result_status if snapshot.state == JobState.COMPLETED else None,
            message=message,
        )


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    result_status: ResultStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
