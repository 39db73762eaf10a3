"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RUNNING (reserved by a worker)
    - RUNNING -> COMPLETED (handler succeeded)
    - RUNNING -> PENDING (retryable failure, attempts left)
    - RUNNING -> FAILED (permanent failure, attempts exhausted, or no handler)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)

# Default values
DEFAULT_MAX_ATTEMPTS = 5

# Retry backoff: min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * 2 ** (attempts - 1))
BACKOFF_BASE_SECONDS = 5
BACKOFF_MAX_SECONDS = 300
MIN_RETRY_DELAY_SECONDS = 1

# Stored error text is cut to this many characters
MAX_ERROR_LENGTH = 1000

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_RESERVED = "jobs_reserved_total"
METRIC_JOBS_PROCESSED = "jobs_processed_total"
METRIC_JOB_RETRIES = "job_retries_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_RESERVATION_ERRORS = "job_reservation_errors_total"
METRIC_OUTCOME_WRITE_ERRORS = "job_outcome_write_errors_total"

# Trace span names
SPAN_RESERVE_JOB = "reserve_job"
SPAN_PROCESS_JOB = "process_job"
