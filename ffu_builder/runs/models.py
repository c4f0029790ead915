"""Run history ORM model.

One RunRecord per pipeline invocation, written by the CLI. The pipeline
itself never touches the database.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ffu_builder.db import Base
from ffu_builder.types import RunStatus


class RunRecord(Base):
    """ORM model for pipeline run records.

    Attributes:
        id: Primary key.
        run_id: Pipeline run identifier.
        edition: OS edition built.
        release: OS release number.
        version: Version label.
        fingerprint_key: Hash of the base-image fingerprint.
        status: Run status (running, succeeded, failed, cancelled).
        used_cache: Whether the base image came from the cache.
        failed_stage: Stage that failed, if any.
        artifact_path: Final image path on success.
        error_type: Error code if the run failed.
        error_message: Error message if the run failed.
        started_at: Run start time.
        finished_at: Run end time.
    """

    __tablename__ = "run_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    edition: Mapped[str] = mapped_column(String(64), nullable=False)
    release: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    fingerprint_key: Mapped[str | None] = mapped_column(String(80), nullable=True, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunStatus.RUNNING.value, index=True
    )
    used_cache: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failed_stage: Mapped[str | None] = mapped_column(String(40), nullable=True)
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_run_records_started", "started_at"),)

    def __repr__(self) -> str:
        """Return string representation of RunRecord."""
        return f"<RunRecord(run_id='{self.run_id}', status='{self.status}')>"

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON output."""
        return {
            "run_id": self.run_id,
            "edition": self.edition,
            "release": self.release,
            "version": self.version,
            "fingerprint_key": self.fingerprint_key,
            "status": self.status,
            "used_cache": self.used_cache,
            "failed_stage": self.failed_stage,
            "artifact_path": self.artifact_path,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


__all__ = ["RunRecord"]
