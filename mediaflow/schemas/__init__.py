from .job import ClassificationResult, JobSnapshot, ProgressEvent

__all__ = ["ClassificationResult", "JobSnapshot", "ProgressEvent"]
