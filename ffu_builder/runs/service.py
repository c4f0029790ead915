"""Run history service functions."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from ffu_builder.runs.models import RunRecord
from ffu_builder.types import RunStatus

logger = logging.getLogger(__name__)


class RunNotFoundError(Exception):
    """Raised when a run record does not exist."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id
        self.code = "not_found"


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_run_record(
    session: Session,
    run_id: str,
    edition: str,
    release: int,
    version: str,
) -> RunRecord:
    """Insert a run record in the running state.

    Args:
        session: Database session.
        run_id: Pipeline run identifier.
        edition: OS edition.
        release: OS release number.
        version: Version label.

    Returns:
        The new RunRecord.
    """
    record = RunRecord(
        run_id=run_id,
        edition=edition,
        release=release,
        version=version,
        status=RunStatus.RUNNING.value,
        used_cache=False,
        started_at=_now(),
    )
    session.add(record)
    session.flush()
    logger.debug("Created run record %s", run_id)
    return record


def get_run_record(session: Session, run_id: str) -> RunRecord:
    """Get a run record by run id.

    Raises:
        RunNotFoundError: If no such run exists.
    """
    record = session.execute(
        select(RunRecord).where(RunRecord.run_id == run_id)
    ).scalar_one_or_none()
    if record is None:
        raise RunNotFoundError(run_id)
    return record


def finish_run_record(
    session: Session,
    run_id: str,
    status: RunStatus,
    used_cache: bool = False,
    fingerprint_key: str | None = None,
    artifact_path: str | None = None,
    failed_stage: str | None = None,
    error_type: str | None = None,
    error_message: str | None = None,
) -> RunRecord:
    """Record the outcome of a run.

    Args:
        session: Database session.
        run_id: Pipeline run identifier.
        status: Terminal status.
        used_cache: Whether the base image came from the cache.
        fingerprint_key: Fingerprint hash, if computed.
        artifact_path: Final image path on success.
        failed_stage: Stage that failed.
        error_type: Error code.
        error_message: Error message.

    Returns:
        The updated RunRecord.
    """
    record = get_run_record(session, run_id)
    record.status = status.value
    record.used_cache = used_cache
    record.fingerprint_key = fingerprint_key
    record.artifact_path = artifact_path
    record.failed_stage = failed_stage
    record.error_type = error_type
    record.error_message = error_message
    record.finished_at = _now()
    session.flush()
    return record


def list_run_records(
    session: Session,
    status: RunStatus | None = None,
    limit: int = 50,
) -> list[RunRecord]:
    """List run records, newest first.

    Args:
        session: Database session.
        status: Optional status filter.
        limit: Maximum number of records.

    Returns:
        Matching RunRecords.
    """
    stmt = select(RunRecord)
    if status is not None:
        stmt = stmt.where(RunRecord.status == status.value)
    stmt = stmt.order_by(RunRecord.started_at.desc(), RunRecord.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = [
    "RunNotFoundError",
    "create_run_record",
    "finish_run_record",
    "get_run_record",
    "list_run_records",
]
