"""
Observability module - Logging, Metrics, and Tracing.
"""

from psychic_metering.observability.logging import get_logger, log_context, setup_logging
from psychic_metering.observability.metrics import metrics
from psychic_metering.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
