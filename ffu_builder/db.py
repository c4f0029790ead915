"""Run history database.

The CLI records one row per build in a small SQLite (or any SQLAlchemy)
database. The pipeline and cache never touch it.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from ffu_builder.config import get_settings

SQLITE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Declarative base of the run history tables."""


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the run history database.

    For file-backed SQLite the parent directory is created, and the
    connection may be used from the pipeline worker thread.

    Args:
        db_url: Database URL (the configured db_url if omitted).

    Returns:
        SQLAlchemy Engine.
    """
    db_url = db_url or get_settings().db_url

    connect_args: dict[str, object] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_file = db_url.removeprefix(SQLITE_PREFIX)
        if db_url.startswith(SQLITE_PREFIX) and db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args)


def create_all_tables(engine: Engine) -> None:
    """Create the run history tables if they do not exist yet."""
    from ffu_builder.runs import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_run_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the run history database, creating its tables on first use.

    Args:
        db_url: Database URL (the configured db_url if omitted).

    Returns:
        Session factory bound to the database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Transactional scope: commit on success, roll back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "open_run_history",
]
