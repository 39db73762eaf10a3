"""
SQLAlchemy database models.
Defines the jobs table.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Identity,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import JobStatus


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class JobRecord(Base):
    """
    Persisted job row.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are written through JobRepository.

    Key constraints:
    - id is store-assigned and monotonically increasing
    - payload_json holds the payload as a JSON text document
    - (status, run_after) is indexed for the reservation scan
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(
        BigInteger,
        Identity(always=False),
        primary_key=True,
    )

    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Stored as text and decoded on read so corrupt documents surface
    payload_json: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    run_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.PENDING,
        server_default=JobStatus.PENDING.value,
    )

    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_jobs_attempts_non_negative"),
        # Reservation scan
        Index("ix_jobs_status_run_after", "status", "run_after"),
        # Housekeeping and reporting
        Index("ix_jobs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"JobRecord(id={self.id}, type={self.type}, "
            f"status={self.status}, attempts={self.attempts})"
        )
