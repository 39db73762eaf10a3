"""
Job handler interface and built-in handlers.

A handler performs the work for one job type and reports the outcome as a
tagged result. Handlers may run more than once for the same job: a retryable
failure re-queues it, and delivery is at-least-once.
"""

import logging
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from jobqueue.types.job import Job, JobResult, Succeeded

logger = logging.getLogger(__name__)


@runtime_checkable
class JobHandler(Protocol):
    """Performs the work for one job type."""

    async def handle(self, job: Job) -> JobResult:
        """
        Run the job.

        Returns:
            Succeeded, RetryableFailure(message) or PermanentFailure(message).
            Raising an exception counts as a permanent failure.
        """
        ...

    async def on_failure(self, job: Job, error: str, will_retry: bool) -> None:
        """
        Observe a failure before its outcome is written.

        Args:
            job: The failed job.
            error: Failure message.
            will_retry: True if the job is going back to pending.
        """
        ...


class BaseJobHandler:
    """Handler base class with a no-op failure hook."""

    async def handle(self, job: Job) -> JobResult:
        raise NotImplementedError

    async def on_failure(self, job: Job, error: str, will_retry: bool) -> None:
        return None


class EchoHandler(BaseJobHandler):
    """
    Logs the payload and succeeds.

    Used for smoke checks of a deployed worker.
    """

    async def handle(self, job: Job) -> JobResult:
        logger.info(
            "Echo job executing",
            extra={"job_id": job.id, "attempts": job.attempts, "payload": job.payload},
        )
        return Succeeded()


def default_handlers() -> Mapping[str, JobHandler]:
    """Handlers used by the worker entry point when none are supplied."""
    return {"echo": EchoHandler()}
