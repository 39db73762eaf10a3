"""
Structured logging setup using structlog.

Modules log through ``logging.getLogger(__name__)`` with ``extra`` fields;
the worker adds its identity and the current job to every record through
context variables.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace

from jobqueue.config import get_settings

if TYPE_CHECKING:
    from jobqueue.types.job import Job

NOISY_LOGGERS = ("sqlalchemy.engine", "asyncio", "opentelemetry")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the active span's trace_id and span_id to a log record."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_name(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag records with the service name shared with tracing."""
    event_dict.setdefault("service", get_settings().otel_service_name)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        add_service_name,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Route structlog and standard library logging through one formatter.

    Output is JSON or console text depending on ``LOG_FORMAT``.
    """
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    shared_processors = _shared_processors()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(settings.log_format),
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def worker_log_context(worker_id: str) -> Iterator[None]:
    """Tag every record logged while the worker loop runs with its id."""
    with structlog.contextvars.bound_contextvars(worker_id=worker_id):
        yield


@contextmanager
def job_log_context(job: "Job") -> Iterator[None]:
    """
    Tag records with the job being processed.

    Only the job fields are unbound on exit, so the worker's own context
    survives from one job to the next.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job.id,
        job_type=job.type,
        attempts=job.attempts,
    ):
        yield
