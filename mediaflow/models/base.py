from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from mediaflow.core.config import settings


class Base(DeclarativeBase):
    pass


def create_db_engine(url: str) -> Engine:
    """Create database engine with appropriate settings based on database type."""
    # SQLite connections are shared with worker threads
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    # One worker process per database: startup recovery fails every unfinished record
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def init_db(bind: Engine) -> None:
    """Create the jobs schema if it does not exist yet."""
    from . import job  # noqa: F401

    Base.metadata.create_all(bind)


engine = create_db_engine(settings.database_url)
