"""
Worker process for executing jobs.

The worker reserves one job at a time from the queue, dispatches it to the
handler registered for its type, and writes the outcome back according to
the retry policy.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Mapping
from types import MappingProxyType

from jobqueue.config import get_settings
from jobqueue.constants import DEFAULT_MAX_ATTEMPTS, SPAN_PROCESS_JOB, SPAN_RESERVE_JOB
from jobqueue.db import close_db, get_engine, get_session_factory, init_db
from jobqueue.db.repository import JobRepository
from jobqueue.exceptions import PayloadDecodeError, ReservationError
from jobqueue.observability.logging import job_log_context, setup_logging, worker_log_context
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobqueue.types.job import Job, JobResult, PermanentFailure, RetryableFailure, Succeeded
from jobqueue.worker.handlers import JobHandler, default_handlers
from jobqueue.worker.retry import calculate_backoff_seconds

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"
OUTCOME_WRITE_FAILED = "write_failed"


class JobWorker:
    """
    Job worker that reserves and executes jobs.

    Features:
    - Exclusive reservation through the repository (FOR UPDATE SKIP LOCKED)
    - Dispatch through an immutable job type -> handler mapping
    - Exponential backoff for retryable failures, up to max_attempts
    - Idle backoff between empty polls and graceful shutdown
    """

    def __init__(
        self,
        repository: JobRepository,
        handlers: Mapping[str, JobHandler],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        worker_id: str | None = None,
        poll_interval: float | None = None,
        max_idle_backoff: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            repository: Store for reservations and outcome writes.
            handlers: Job type -> handler. Copied; later changes to the
                passed mapping are not seen.
            max_attempts: Attempts allowed before a retryable failure
                becomes permanent.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            poll_interval: Seconds to wait after the first empty poll.
            max_idle_backoff: Upper bound for the doubling idle wait.
            metrics: Metrics collector. Defaults to the global one.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        settings = get_settings()

        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.max_idle_backoff = max(
            self.poll_interval,
            max_idle_backoff or settings.worker_max_idle_backoff_seconds,
        )

        self._repository = repository
        self._handlers: Mapping[str, JobHandler] = MappingProxyType(dict(handlers))
        self._metrics = metrics or get_metrics()
        self._running = False
        self._stop_event = asyncio.Event()

    @property
    def handlers(self) -> Mapping[str, JobHandler]:
        """Read-only view of the registered handlers."""
        return self._handlers

    async def start(self) -> None:
        """Run the poll loop until stop() is called."""
        with worker_log_context(self.worker_id):
            logger.info(
                "Worker starting",
                extra={
                    "max_attempts": self.max_attempts,
                    "job_types": sorted(self._handlers),
                },
            )

            self._running = True
            self._stop_event.clear()
            idle_delay = self.poll_interval

            while self._running:
                try:
                    processed = await self.run_once()
                except Exception as e:
                    logger.exception(f"Failed to reserve job: {e}")
                    processed = False

                if processed:
                    idle_delay = self.poll_interval
                    continue

                await self._refresh_queue_depth()
                await self._wait(idle_delay)
                idle_delay = min(idle_delay * 2, self.max_idle_backoff)

            logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop the worker after the current cycle."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> bool:
        """
        Reserve and process at most one job.

        Returns:
            True if a job was processed, False if none was eligible.

        Raises:
            ReservationError: If the store fails while reserving.
            PayloadDecodeError: If the reserved job's payload is corrupt.
        """
        job = await self._reserve()
        if job is None:
            return False

        await self.process(job)
        return True

    async def process(self, job: Job) -> None:
        """
        Execute a reserved job and write exactly one outcome.

        Never raises: handler exceptions become permanent failures, and a
        failed outcome write is logged and counted.

        Args:
            job: A job returned by reserve_next_pending.
        """
        start_time = time.monotonic()

        tracer = get_tracer()
        with job_log_context(job), tracer.start_as_current_span(SPAN_PROCESS_JOB) as span:
            span.set_attribute("job_id", job.id)
            span.set_attribute("job_type", job.type)
            span.set_attribute("attempts", job.attempts)

            outcome = await self._dispatch(job)

            span.set_attribute("outcome", outcome)

        self._metrics.record_job_processed(
            job_type=job.type,
            outcome=outcome,
            duration_seconds=time.monotonic() - start_time,
        )

    async def _reserve(self) -> Job | None:
        with get_tracer().start_as_current_span(SPAN_RESERVE_JOB) as span:
            span.set_attribute("worker_id", self.worker_id)
            try:
                job = await self._repository.reserve_next_pending()
            except PayloadDecodeError:
                self._metrics.record_reservation_error("corrupt_payload")
                raise
            except ReservationError:
                self._metrics.record_reservation_error("store")
                raise

        if job is not None:
            self._metrics.record_job_reserved(job.type)
        return job

    async def _dispatch(self, job: Job) -> str:
        """Run the handler for a job and commit the outcome it implies."""
        handler = self._handlers.get(job.type)

        if handler is None:
            message = f"No handler registered for job type: {job.type}"
            logger.error(message, extra={"job_id": job.id})
            return await self._commit(job, OUTCOME_FAILED, "mark_failed", message)

        logger.info(
            "Executing job",
            extra={"job_id": job.id, "job_type": job.type, "attempts": job.attempts},
        )

        result = await self._run_handler(handler, job)

        match result:
            case Succeeded():
                return await self._commit(job, OUTCOME_COMPLETED, "mark_completed")

            case RetryableFailure(message=message):
                will_retry = job.attempts < self.max_attempts
                await self._notify_failure(handler, job, message, will_retry)

                if will_retry:
                    delay = calculate_backoff_seconds(job.attempts)
                    return await self._commit(
                        job, OUTCOME_RETRIED, "schedule_retry", delay, message
                    )

                logger.warning(
                    f"Job exhausted {self.max_attempts} attempts",
                    extra={"job_id": job.id, "error": message},
                )
                return await self._commit(job, OUTCOME_FAILED, "mark_failed", message)

            case PermanentFailure(message=message):
                await self._notify_failure(handler, job, message, False)
                return await self._commit(job, OUTCOME_FAILED, "mark_failed", message)

    async def _run_handler(self, handler: JobHandler, job: Job) -> JobResult:
        try:
            result = await handler.handle(job)
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": job.id, "error": str(e)},
            )
            return PermanentFailure(str(e) or type(e).__name__)

        if not isinstance(result, (Succeeded, RetryableFailure, PermanentFailure)):
            return PermanentFailure(
                f"Handler returned unsupported result: {result!r}"
            )
        return result

    async def _notify_failure(
        self,
        handler: JobHandler,
        job: Job,
        message: str,
        will_retry: bool,
    ) -> None:
        try:
            await handler.on_failure(job, message, will_retry)
        except Exception:
            logger.exception(
                "Failure hook raised exception",
                extra={"job_id": job.id, "will_retry": will_retry},
            )

    async def _commit(self, job: Job, outcome: str, action: str, *args: object) -> str:
        """Apply a repository write and return the outcome that persisted."""
        write = getattr(self._repository, action)
        try:
            await write(job, *args)
        except Exception:
            logger.exception(
                "Failed to write job outcome",
                extra={"job_id": job.id, "action": action, "outcome": outcome},
            )
            self._metrics.record_outcome_write_error()
            return OUTCOME_WRITE_FAILED
        return outcome

    async def _refresh_queue_depth(self) -> None:
        try:
            counts = await self._repository.count_by_status()
        except Exception:
            logger.warning("Could not read queue depth", exc_info=True)
            return
        self._metrics.update_queue_depth(counts)

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


async def run_async(handlers: Mapping[str, JobHandler] | None = None) -> None:
    """
    Run a worker until SIGTERM or SIGINT.

    Args:
        handlers: Job type -> handler. Defaults to default_handlers().
    """
    setup_logging()
    setup_tracing()
    settings = get_settings()

    await init_db()
    if settings.otel_enabled:
        instrument_sqlalchemy(get_engine().sync_engine)

    metrics = get_metrics()
    if settings.prometheus_enabled:
        metrics.start_server(settings.prometheus_port)

    worker = JobWorker(
        JobRepository(get_session_factory()),
        handlers if handlers is not None else default_handlers(),
        settings.worker_max_attempts,
        worker_id=settings.worker_id,
        metrics=metrics,
    )

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
