"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_PROCESSED,
    METRIC_JOBS_RESERVED,
    METRIC_OUTCOME_WRITE_ERRORS,
    METRIC_QUEUE_DEPTH,
    METRIC_RESERVATION_ERRORS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job worker.

    Collects metrics for:
    - Queue depth by status
    - Reservations and processing outcomes
    - Job execution duration
    - Retries and store errors
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs in the store by status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_reserved = Counter(
            METRIC_JOBS_RESERVED,
            "Total number of jobs reserved",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_processed = Counter(
            METRIC_JOBS_PROCESSED,
            "Total number of processed jobs by outcome",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of retries scheduled",
            ["job_type"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job handler duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
            registry=self._registry,
        )

        self.reservation_errors = Counter(
            METRIC_RESERVATION_ERRORS,
            "Total number of failed reservation attempts",
            ["reason"],
            registry=self._registry,
        )

        self.outcome_write_errors = Counter(
            METRIC_OUTCOME_WRITE_ERRORS,
            "Total number of outcome writes that failed",
            registry=self._registry,
        )

    def record_job_reserved(self, job_type: str) -> None:
        """Record a reservation."""
        self.jobs_reserved.labels(job_type=job_type).inc()

    def record_job_processed(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """
        Record the outcome of one processing cycle.

        Outcomes are completed, retried, failed, or write_failed when the
        outcome could not be persisted. Only a persisted retry counts
        towards job_retries_total.
        """
        self.jobs_processed.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )
        if outcome == "retried":
            self.job_retries.labels(job_type=job_type).inc()

    def record_reservation_error(self, reason: str) -> None:
        """Record a reservation failure."""
        self.reservation_errors.labels(reason=reason).inc()

    def record_outcome_write_error(self) -> None:
        """Record an outcome write failure."""
        self.outcome_write_errors.inc()

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update queue depth gauges from status counts."""
        for status, count in counts.items():
            self.queue_depth.labels(status=status).set(count)

    def start_server(self, port: int) -> None:
        """Expose the registry over HTTP on the given port."""
        start_http_server(port, registry=self._registry)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
