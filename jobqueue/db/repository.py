"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.constants import MAX_ERROR_LENGTH, MIN_RETRY_DELAY_SECONDS, JobStatus
from jobqueue.db.models import JobRecord
from jobqueue.exceptions import (
    JobUpdateError,
    PayloadDecodeError,
    PayloadEncodeError,
    ReservationError,
)
from jobqueue.types.job import Job, validate_payload

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    JobRecord.id,
    JobRecord.type,
    JobRecord.payload_json,
    JobRecord.attempts,
    JobRecord.status,
    JobRecord.run_after,
    JobRecord.created_at,
    JobRecord.error,
)


def sanitize_error(error: str) -> str:
    """
    Make error text storable in a TEXT column.

    PostgreSQL rejects NUL characters and the driver cannot encode unpaired
    surrogates, so both are replaced before the text is cut to the stored
    maximum length.
    """
    cleaned = error.replace("\x00", "\ufffd")
    cleaned = cleaned.encode("utf-8", "replace").decode("utf-8")
    return cleaned[:MAX_ERROR_LENGTH]


def encode_payload(payload: Mapping[str, Any]) -> str:
    """
    Serialise a payload to a JSON document.

    Raises:
        EmptyPayloadError: If the payload is empty.
        PayloadEncodeError: If the payload is not JSON-serialisable.
    """
    data = validate_payload(payload)
    try:
        return json.dumps(data, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise PayloadEncodeError(f"Job payload is not JSON-serialisable: {exc}") from exc


def decode_payload(job_id: int, payload_json: str) -> dict[str, Any]:
    """
    Decode a stored payload document.

    Raises:
        PayloadDecodeError: If the document is not a non-empty JSON object.
    """
    try:
        decoded = json.loads(payload_json)
    except (TypeError, ValueError, RecursionError) as exc:
        raise PayloadDecodeError(job_id, "payload is not valid JSON") from exc

    if not isinstance(decoded, dict):
        raise PayloadDecodeError(job_id, "payload must decode to a JSON object")
    if not decoded:
        raise PayloadDecodeError(job_id, "payload is empty")

    return decoded


class JobRepository:
    """
    Repository for job database operations.

    Every method runs in its own short transaction, committed before the
    method returns. Handlers therefore never execute inside an open
    transaction or while holding a row lock.

    Implements atomic operations for:
    - Job reservation with FOR UPDATE SKIP LOCKED
    - Outcome writes (completed, failed, retry scheduling)
    - Producer-side enqueueing and status reporting
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the repository with a session factory.

        Args:
            session_factory: Factory producing async database sessions.
        """
        self._session_factory = session_factory

    async def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any],
        run_after: datetime | None = None,
    ) -> Job:
        """
        Insert a new pending job.

        Args:
            job_type: Handler key for the job.
            payload: Non-empty JSON-serialisable mapping.
            run_after: Earliest reservation time. Defaults to now.

        Returns:
            The created Job.
        """
        values: dict[str, Any] = {
            "type": job_type,
            "payload_json": encode_payload(payload),
            "status": JobStatus.PENDING,
            "attempts": 0,
        }
        if run_after is not None:
            values["run_after"] = run_after

        stmt = insert(JobRecord).values(**values).returning(*_JOB_COLUMNS)

        async with self._session_factory() as session:
            async with session.begin():
                row = (await session.execute(stmt)).one()

        logger.info(
            "Enqueued job",
            extra={"job_id": row.id, "job_type": job_type},
        )
        return self._to_job(row)

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job identifier.

        Returns:
            The Job or None if not found.
        """
        stmt = select(*_JOB_COLUMNS).where(JobRecord.id == job_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one_or_none()

        if row is None:
            return None
        return self._to_job(row)

    async def reserve_next_pending(self) -> Job | None:
        """
        Reserve the oldest eligible pending job.

        Selects one row with status pending and run_after in the past,
        ordered by (run_after, id), using FOR UPDATE SKIP LOCKED so that
        concurrent reservers skip each other's rows instead of waiting.
        The row is moved to running with attempts incremented and committed
        before it is returned.

        Returns:
            The reserved Job, or None if nothing is eligible.

        Raises:
            ReservationError: If the store fails during the transaction.
            PayloadDecodeError: If the reserved row holds a corrupt payload.
        """
        select_stmt = (
            select(JobRecord.id)
            .where(
                JobRecord.status == JobStatus.PENDING,
                JobRecord.run_after <= func.now(),
            )
            .order_by(JobRecord.run_after.asc(), JobRecord.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    job_id = (await session.execute(select_stmt)).scalar_one_or_none()
                    if job_id is None:
                        return None

                    update_stmt = (
                        update(JobRecord)
                        .where(JobRecord.id == job_id)
                        .values(
                            status=JobStatus.RUNNING,
                            attempts=JobRecord.attempts + 1,
                            error=None,
                        )
                        .returning(*_JOB_COLUMNS)
                        .execution_options(synchronize_session=False)
                    )
                    row = (await session.execute(update_stmt)).one()
        except (SQLAlchemyError, OSError) as exc:
            raise ReservationError(f"Failed to reserve job: {exc}") from exc

        logger.info(
            "Reserved job",
            extra={"job_id": row.id, "job_type": row.type, "attempts": row.attempts},
        )

        # Decoded after commit: a corrupt row stays running rather than
        # blocking the head of the queue for every worker.
        return self._to_job(row)

    async def mark_completed(self, job: Job) -> None:
        """
        Mark a running job as completed and clear its error.

        Calling it again for the same job is a no-op.
        """
        updated = await self._write_outcome(
            job,
            "mark completed",
            status=JobStatus.COMPLETED,
            error=None,
        )
        if updated is None:
            return

        job.status = JobStatus.COMPLETED
        job.error = None
        logger.info("Job completed", extra={"job_id": job.id})

    async def mark_failed(self, job: Job, error: str) -> None:
        """Mark a running job as permanently failed."""
        message = sanitize_error(error)
        updated = await self._write_outcome(
            job,
            "mark failed",
            status=JobStatus.FAILED,
            error=message,
        )
        if updated is None:
            return

        job.status = JobStatus.FAILED
        job.error = message
        logger.warning(
            "Job failed",
            extra={"job_id": job.id, "attempts": job.attempts, "error": message},
        )

    async def schedule_retry(self, job: Job, delay_seconds: int, error: str) -> None:
        """
        Return a running job to pending, eligible again after the delay.

        Args:
            job: The reserved job.
            delay_seconds: Seconds until the job may be reserved again,
                raised to at least one second.
            error: Failure message from this attempt.
        """
        delay = max(MIN_RETRY_DELAY_SECONDS, int(delay_seconds))
        message = sanitize_error(error)
        run_after = await self._write_outcome(
            job,
            "schedule retry",
            status=JobStatus.PENDING,
            error=message,
            run_after=func.now() + timedelta(seconds=delay),
        )
        if run_after is None:
            return

        job.status = JobStatus.PENDING
        job.error = message
        job.run_after = run_after
        logger.info(
            "Job scheduled for retry",
            extra={"job_id": job.id, "attempts": job.attempts, "delay_seconds": delay},
        )

    async def count_by_status(self) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count, including zero counts.
        """
        stmt = select(JobRecord.status, func.count()).group_by(JobRecord.status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            counts = {status.value: count for status, count in result.all()}

        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    async def _write_outcome(
        self,
        job: Job,
        action: str,
        **values: Any,
    ) -> datetime | None:
        """
        Apply an outcome update to a job that is still running.

        Returns:
            The row's run_after after the update, or None if the row was
            not running (already terminal or requeued).
        """
        stmt = (
            update(JobRecord)
            .where(
                JobRecord.id == job.id,
                JobRecord.status == JobStatus.RUNNING,
            )
            .values(**values)
            .returning(JobRecord.run_after)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    run_after = (await session.execute(stmt)).scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise JobUpdateError(job.id, f"Failed to {action}: {exc}") from exc

        if run_after is None:
            logger.warning(
                f"Job is not running, skipped {action}",
                extra={"job_id": job.id},
            )
        return run_after

    @staticmethod
    def _to_job(row: Any) -> Job:
        """Convert a result row to a Job, decoding its payload."""
        return Job(
            id=row.id,
            type=row.type,
            payload=decode_payload(row.id, row.payload_json),
            attempts=row.attempts,
            status=JobStatus(row.status),
            run_after=row.run_after,
            created_at=row.created_at,
            error=row.error,
        )
