"""
Exceptions raised by the job queue core.

Handler outcomes are not exceptions: handlers report them through the tagged
results in jobqueue.types.job. The classes below cover payload validation and
store failures.
"""


class JobQueueError(Exception):
    """Base class for job queue errors."""


class EmptyPayloadError(JobQueueError, ValueError):
    """A job payload was empty."""

    def __init__(self, message: str = "Job payload cannot be empty."):
        super().__init__(message)


class PayloadEncodeError(JobQueueError, ValueError):
    """A payload could not be serialised to JSON."""


class PayloadDecodeError(JobQueueError):
    """
    A stored payload could not be decoded.

    Signals data corruption rather than a processing failure, so it is
    raised to the reservation caller instead of becoming a status change.
    """

    def __init__(self, job_id: int, message: str):
        super().__init__(f"Job {job_id}: {message}")
        self.job_id = job_id


class ReservationError(JobQueueError):
    """The store failed while reserving a job."""


class JobUpdateError(JobQueueError):
    """The store failed while writing a job outcome."""

    def __init__(self, job_id: int, message: str):
        super().__init__(f"Job {job_id}: {message}")
        self.job_id = job_id
