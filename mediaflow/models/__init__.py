from .base import Base, create_db_engine, engine, init_db
from .job import JobRecord, JobState, ResultStatus

__all__ = [
    "Base",
    "create_db_engine",
    "engine",
    "init_db",
    "JobRecord",
    "JobState",
    "ResultStatus",
]
