"""
Job-related type definitions for internal use.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jobqueue.constants import TERMINAL_STATUSES, JobStatus
from jobqueue.exceptions import EmptyPayloadError


def validate_payload(payload: Any) -> dict[str, Any]:
    """
    Check that a payload is a non-empty mapping and return a dict copy.

    Raises:
        EmptyPayloadError: If the payload is empty.
        TypeError: If the payload is not a mapping.
    """
    if not isinstance(payload, Mapping):
        raise TypeError(
            f"Job payload must be a mapping, got {type(payload).__name__}"
        )
    if not payload:
        raise EmptyPayloadError()
    return dict(payload)


@dataclass
class Job:
    """
    In-memory projection of one queued job.

    Instances are built by the repository from a row and handed to a single
    worker cycle. The repository keeps status, run_after and error in sync
    with each write it makes; nothing else mutates them.
    """

    id: int
    type: str
    payload: dict[str, Any]
    attempts: int
    status: JobStatus
    run_after: datetime
    created_at: datetime | None = None
    error: str | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.payload = validate_payload(self.payload)
        if self.attempts < 0:
            raise ValueError("Job attempts cannot be negative")
        self.status = JobStatus(self.status)

    def replace_payload(self, payload: Mapping[str, Any]) -> None:
        """Replace the payload, rejecting an empty mapping."""
        self.payload = validate_payload(payload)

    @property
    def is_terminal(self) -> bool:
        """Check if the job has reached completed or failed."""
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class Succeeded:
    """Handler finished the work."""


@dataclass(frozen=True)
class RetryableFailure:
    """
    Handler failed in a way that may succeed later.

    The worker retries with backoff while attempts remain.
    """

    message: str


@dataclass(frozen=True)
class PermanentFailure:
    """Handler failed and the job must not be retried."""

    message: str


JobResult = Succeeded | RetryableFailure | PermanentFailure
