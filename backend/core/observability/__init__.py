"""Minimal observability for logging and metrics.

Provides JSON logging with a per-run trace id and in-process metrics for the
sync engine without external dependencies.
"""
import uuid

from backend.core.logging import setup_logging_with_pii_redaction

from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for a sync run or CLI invocation."""
    return str(uuid.uuid4())


def set_trace_id(trace_id: str | None = None) -> str:
    """Set or generate the trace ID for the current thread."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    setup_logging_with_pii_redaction()
    if not enable_metrics:
        metrics.reset_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_trace_id",
    "set_trace_id",
    "init_observability",
]
