"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels:
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    FEATURE = "feature"
    OUTCOME = "outcome"
    SOURCE = "source"
    ROUTE_CLASS = "route_class"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Credit deductions (per feature and outcome)
    - Payments (created, confirmed per source, expired)
    - Auto-confirmation ticks
    - Rate limiting (decisions, backend fallbacks)
    - Registration admission
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlements_service",
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
            "entitlements_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlements_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "entitlements_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Credit Ledger Metrics
        # ====================================================================
        self.credit_deductions_total = Counter(
            "entitlements_credit_deductions_total",
            "Credit deduction attempts",
            [MetricLabels.FEATURE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.payments_created_total = Counter(
            "entitlements_payments_created_total",
            "Payment requests created",
        )

        self.payments_confirmed_total = Counter(
            "entitlements_payments_confirmed_total",
            "Payments moved to completed",
            [MetricLabels.SOURCE],
        )

        self.payments_expired_total = Counter(
            "entitlements_payments_expired_total",
            "Payments moved to expired",
        )

        self.premium_activations_total = Counter(
            "entitlements_premium_activations_total",
            "Premium activations",
            [MetricLabels.SOURCE],
        )

        # ====================================================================
        # Scheduler Metrics
        # ====================================================================
        self.auto_confirm_ticks_total = Counter(
            "entitlements_auto_confirm_ticks_total",
            "Auto-confirmation ticks",
            [MetricLabels.OUTCOME],
        )

        self.auto_confirm_tick_duration_seconds = Histogram(
            "entitlements_auto_confirm_tick_duration_seconds",
            "Auto-confirmation tick duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
        )

        # ====================================================================
        # Rate Limiting Metrics
        # ====================================================================
        self.rate_limit_decisions_total = Counter(
            "entitlements_rate_limit_decisions_total",
            "Rate limiter decisions",
            [MetricLabels.ROUTE_CLASS, "allowed"],
        )

        self.rate_limit_fallbacks_total = Counter(
            "entitlements_rate_limit_fallbacks_total",
            "Calls served by the in-process limiter because the shared store failed",
        )

        # ====================================================================
        # Registration Metrics
        # ====================================================================
        self.registrations_total = Counter(
            "entitlements_registrations_total",
            "Registration attempts by admission outcome",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "entitlements_errors_total",
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

    def record_deduction(self, feature: str, outcome: str) -> None:
        """Record a ledger deduction (allowed, premium, no_credits, not_found)."""
        self.credit_deductions_total.labels(feature=feature, outcome=outcome).inc()

    def record_payment_confirmed(self, source: str) -> None:
        self.payments_confirmed_total.labels(source=source).inc()

    def record_premium_activation(self, source: str) -> None:
        self.premium_activations_total.labels(source=source).inc()

    def record_tick(self, outcome: str, duration: float) -> None:
        """Record an auto-confirmation tick."""
        self.auto_confirm_ticks_total.labels(outcome=outcome).inc()
        self.auto_confirm_tick_duration_seconds.observe(duration)

    def record_rate_limit(self, route_class: str, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(
            route_class=route_class, allowed=str(allowed)
        ).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
