"""
Metrics Collection with Prometheus.

Exposes credit-economy and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from mycelia_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ACTION_KIND = "action_kind"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class CreditMetrics:
    """
    Centralized metrics for the Mycelia Billing API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Gate evaluations (rate by action and outcome, credits charged)
    - Billing reconciliation (events by outcome, top-ups)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "credits_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "credits_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "credits_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "credits_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Gate Metrics
        # ====================================================================
        self.charge_attempts_total = Counter(
            "credits_charge_attempts_total",
            "Credit gate evaluations",
            [MetricLabels.ACTION_KIND, MetricLabels.OUTCOME],
        )

        self.credits_charged = Histogram(
            "credits_charged",
            "Credits deducted per accepted charge",
            [MetricLabels.ACTION_KIND],
            buckets=(1, 2, 3, 5, 10, 25, 50, 100, 250, 500),
        )

        self.charge_duration_seconds = Histogram(
            "credits_charge_duration_seconds",
            "Gate evaluation duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.period_rollovers_total = Counter(
            "credits_period_rollovers_total",
            "Lazy period rollovers applied by the gate",
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.billing_events_total = Counter(
            "credits_billing_events_total",
            "Billing events handled by the reconciler",
            ["event_type", MetricLabels.OUTCOME],
        )

        self.top_up_credits = Histogram(
            "credits_top_up_credits",
            "Bonus credits added per top-up",
            buckets=(100, 500, 1000, 2000, 5000, 10000, 50000),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "credits_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_charge(self, action_kind: str, accepted: bool, cost: int, duration: float) -> None:
        """Record a gate evaluation."""
        outcome = "accepted" if accepted else "rejected"
        self.charge_attempts_total.labels(action_kind=action_kind, outcome=outcome).inc()
        if accepted:
            self.credits_charged.labels(action_kind=action_kind).observe(cost)
        self.charge_duration_seconds.observe(duration)

    def record_billing_event(self, event_type: str, outcome: str) -> None:
        """Record a reconciler decision."""
        self.billing_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CreditMetrics()
