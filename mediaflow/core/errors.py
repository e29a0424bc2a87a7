class MediaflowError(Exception):
    """Base class for engine errors."""


class DuplicateJobError(MediaflowError):
    """Submission rejected because the job ID is already running or was already used."""

    def __init__(self, job_id: str, reason: str = "active") -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} rejected: {reason}")


class JobNotFoundError(MediaflowError):
    """No record exists for the job ID."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ClassificationError(MediaflowError):
    """The classifier failed to produce a decision."""
    pass


class RecordStoreError(MediaflowError):
    """Persistence failure in the record store."""
    pass


class JobTimeoutError(MediaflowError):
    """Raised when the watchdog aborts a stalled job."""
    pass


class JobCancelledError(MediaflowError):
    """Raised at a stage boundary after a cancel request."""
    pass


class SchedulerClosedError(MediaflowError):
    """The scheduler is draining and no longer admits jobs."""
    pass


class InvalidPipelineError(MediaflowError):
    """Stage list violates the pipeline ordering rules."""
    pass


def failure_reason(exc: BaseException) -> str:
    """Render an exception as a record failure reason."""
    message = str(exc)
    text = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    return text[:500]
