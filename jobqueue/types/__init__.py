"""
Type definitions for the job queue.
"""

from jobqueue.types.job import (
    Job,
    JobResult,
    PermanentFailure,
    RetryableFailure,
    Succeeded,
    validate_payload,
)

__all__ = [
    "Job",
    "JobResult",
    "Succeeded",
    "RetryableFailure",
    "PermanentFailure",
    "validate_payload",
]
