from .pipeline import ClassificationStage, Pipeline, Stage, WorkStage, build_default_pipeline
from .runner import JobRunner
from .scheduler import JobScheduler, RunnerHandle

__all__ = [
    "ClassificationStage",
    "Pipeline",
    "Stage",
    "WorkStage",
    "build_default_pipeline",
    "JobRunner",
    "JobScheduler",
    "RunnerHandle",
]
