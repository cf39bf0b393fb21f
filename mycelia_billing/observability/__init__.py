"""
Observability module - Logging, Metrics, and Tracing.
"""

from mycelia_billing.observability.logging import get_logger, log_context, setup_logging
from mycelia_billing.observability.metrics import metrics
from mycelia_billing.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
