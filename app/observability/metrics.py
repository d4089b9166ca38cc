"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TRANSACTION_TYPE = "transaction_type"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    RULE = "rule"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Credit Ledger API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Deductions (outcome, amount, duration)
    - Grants and monthly resets
    - Webhook events by type and outcome
    - Rate limit rejections
    - Admin overrides
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "ledger_service",
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.deductions_total = Counter(
            "ledger_deductions_total",
            "Deduction attempts by outcome",
            [MetricLabels.TRANSACTION_TYPE, MetricLabels.OUTCOME],
        )

        self.deduction_amount = Histogram(
            "ledger_deduction_amount_credits",
            "Credits deducted per successful deduction",
            buckets=(1, 3, 5, 10, 25, 50, 100),
        )

        self.deduction_duration_seconds = Histogram(
            "ledger_deduction_duration_seconds",
            "Deduction duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.grants_total = Counter(
            "ledger_grants_total",
            "Credit grants and resets by type",
            [MetricLabels.TRANSACTION_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Subscription / Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "ledger_webhook_events_total",
            "Payment processor webhook events by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Protection Metrics
        # ====================================================================
        self.rate_limited_total = Counter(
            "ledger_rate_limited_total",
            "Requests rejected by the rate limiter",
            [MetricLabels.RULE],
        )

        self.admin_overrides_total = Counter(
            "ledger_admin_overrides_total",
            "Administrative tier overrides by outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ledger_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    @contextmanager
    def track_in_progress(self, method: str) -> Iterator[None]:
        """Count a request as in flight for the duration of the block."""
        gauge = self.http_requests_in_progress.labels(method=method)
        gauge.inc()
        try:
            yield
        finally:
            gauge.dec()

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

    def record_deduction(
        self, transaction_type: str, success: bool, amount: int, duration: float
    ) -> None:
        """Record deduction metrics."""
        outcome = "success" if success else "insufficient"
        self.deductions_total.labels(transaction_type=transaction_type, outcome=outcome).inc()
        if success:
            self.deduction_amount.observe(amount)
        self.deduction_duration_seconds.observe(duration)

    def record_grant(self, transaction_type: str, applied: bool) -> None:
        """Record grant/reset metrics."""
        self.grants_total.labels(
            transaction_type=transaction_type, outcome="applied" if applied else "skipped"
        ).inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        """Record webhook handling outcome."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_rate_limited(self, rule: str) -> None:
        """Record a rate-limit rejection."""
        self.rate_limited_total.labels(rule=rule).inc()

    def record_admin_override(self, outcome: str) -> None:
        """Record an administrative override attempt."""
        self.admin_overrides_total.labels(outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()
