"""
Metrics Collection with Prometheus.

Exposes security and ledger metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from ava_api.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class ServiceMetrics:
    """
    Centralized metrics for the Ava Support API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Logins and token verification (outcomes, lockouts)
    - Two-factor checks and rate-limit rejections
    - Credit consumption and allocation
    - Webhook processing
    - Cleanup sweeps
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ava_service",
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
            "ava_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ava_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ava_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Auth Metrics
        # ====================================================================
        self.logins_total = Counter(
            "ava_logins_total",
            "Login attempts by outcome (success, two_factor_required, failed, locked, error)",
            [MetricLabels.OUTCOME],
        )

        self.token_verifications_total = Counter(
            "ava_token_verifications_total",
            "Token verifications by outcome (valid, invalid)",
            [MetricLabels.OUTCOME],
        )

        self.sessions_invalidated_total = Counter(
            "ava_sessions_invalidated_total",
            "Sessions deactivated by operation",
            [MetricLabels.OPERATION],
        )

        self.two_factor_checks_total = Counter(
            "ava_two_factor_checks_total",
            "Two-factor code checks by operation and outcome (valid, invalid)",
            [MetricLabels.OPERATION, MetricLabels.OUTCOME],
        )

        self.rate_limited_total = Counter(
            "ava_rate_limited_total",
            "Requests rejected with 429 by endpoint",
            [MetricLabels.ENDPOINT],
        )

        # ====================================================================
        # Credits Metrics
        # ====================================================================
        self.credit_consumptions_total = Counter(
            "ava_credit_consumptions_total",
            "Credit consumption attempts by outcome (accepted, rejected)",
            [MetricLabels.OUTCOME, "action_type"],
        )

        self.credits_consumed_total = Counter(
            "ava_credits_consumed_total",
            "Credits consumed",
            ["action_type"],
        )

        self.credit_allocations_total = Counter(
            "ava_credit_allocations_total",
            "Credit allocations (first allocation or renewal)",
            ["kind"],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "ava_webhook_events_total",
            "Payment webhook events by type and outcome",
            ["event_type", MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Sweep Metrics
        # ====================================================================
        self.sweep_runs_total = Counter(
            "ava_sweep_runs_total",
            "Cleanup sweep runs by outcome (success, skipped, failed)",
            [MetricLabels.OUTCOME],
        )

        self.sweep_rows_total = Counter(
            "ava_sweep_rows_total",
            "Rows deactivated or deleted by the cleanup sweep",
            ["table"],
        )

        self.sweep_duration_seconds = Histogram(
            "ava_sweep_duration_seconds",
            "Cleanup sweep duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "ava_errors_total",
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

    def record_login(self, outcome: str) -> None:
        """Record a login attempt outcome."""
        self.logins_total.labels(outcome=outcome).inc()

    def record_token_verification(self, valid: bool) -> None:
        """Record a token verification outcome."""
        self.token_verifications_total.labels(outcome="valid" if valid else "invalid").inc()

    def record_sessions_invalidated(self, operation: str, count: int) -> None:
        """Record deactivated sessions."""
        if count > 0:
            self.sessions_invalidated_total.labels(operation=operation).inc(count)

    def record_two_factor_check(self, operation: str, valid: bool) -> None:
        """Record a TOTP or backup code check."""
        self.two_factor_checks_total.labels(
            operation=operation, outcome="valid" if valid else "invalid"
        ).inc()

    def record_rate_limited(self, endpoint: str) -> None:
        self.rate_limited_total.labels(endpoint=endpoint).inc()

    def record_credit_consumption(self, accepted: bool, amount: int, action_type: str) -> None:
        """Record a credit consumption attempt."""
        self.credit_consumptions_total.labels(
            outcome="accepted" if accepted else "rejected", action_type=action_type
        ).inc()
        if accepted:
            self.credits_consumed_total.labels(action_type=action_type).inc(amount)

    def record_credit_allocation(self, renewal: bool) -> None:
        """Record a credit allocation."""
        self.credit_allocations_total.labels(kind="renewal" if renewal else "initial").inc()

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        """Record a processed webhook event."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_sweep(
        self, outcome: str, duration: float | None = None, rows: dict[str, int] | None = None
    ) -> None:
        """Record a cleanup sweep run."""
        self.sweep_runs_total.labels(outcome=outcome).inc()
        if duration is not None:
            self.sweep_duration_seconds.observe(duration)
        for table, count in (rows or {}).items():
            if count > 0:
                self.sweep_rows_total.labels(table=table).inc(count)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance (Prometheus collectors register once per process)
metrics = ServiceMetrics()
