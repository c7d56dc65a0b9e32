"""Minimal observability for logging, health checks and metrics.

Provides JSON logging with secret redaction, health/readiness endpoints,
and in-process metrics without external dependencies.
"""
import uuid
from typing import Optional

from . import health
from . import logging as logging_module
from . import metrics


def generate_trace_id() -> str:
    """Generate a new trace ID for request/CLI contexts."""
    return str(uuid.uuid4())


def bind_context(trace_id: Optional[str] = None, tenant_id: Optional[str] = None) -> str:
    """Bind trace (generated when absent) and tenant for CLI runs; returns the trace ID."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    if tenant_id:
        logging_module.set_tenant_id(tenant_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "health",
    "metrics",
    "generate_trace_id",
    "bind_context",
    "init_observability",
]
