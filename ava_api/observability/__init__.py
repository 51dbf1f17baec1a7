"""
Observability module - Logging, Metrics, and Tracing.
"""

from ava_api.observability.logging import get_logger, log_context, setup_logging
from ava_api.observability.metrics import metrics
from ava_api.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
