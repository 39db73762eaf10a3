"""
Retry backoff policy.
"""

from jobqueue.constants import BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS


def calculate_backoff_seconds(attempts: int) -> int:
    """
    Delay before a failed job becomes eligible again.

    Uses the attempt count after the reservation that just failed, so the
    first retry waits BACKOFF_BASE_SECONDS and each later one doubles, capped
    at BACKOFF_MAX_SECONDS.

    Args:
        attempts: Attempts made so far, including the one that just failed.

    Returns:
        Delay in whole seconds.
    """
    attempt = max(1, attempts)
    delay = BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
    return min(BACKOFF_MAX_SECONDS, delay)
