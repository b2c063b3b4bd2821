"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement engine.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Webhook events (rate by type and outcome)
    - Credit ledger (grants, consumption, insufficient balance)
    - Plan overrides
    - Refresh scheduler (cycles, per-entity outcomes)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlement_service",
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
            "entitlement_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlement_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "entitlement_webhook_events_total",
            "Billing provider webhook events by type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Credit Ledger Metrics
        # ====================================================================
        self.credits_granted_total = Counter(
            "entitlement_credits_granted_total",
            "Total credits granted",
            ["reason"],
        )

        self.credits_consumed_total = Counter(
            "entitlement_credits_consumed_total",
            "Total credits consumed",
        )

        self.insufficient_credits_total = Counter(
            "entitlement_insufficient_credits_total",
            "Consume attempts rejected for insufficient balance",
        )

        self.plan_overrides_total = Counter(
            "entitlement_plan_overrides_total",
            "Plan override changes",
            ["action"],
        )

        # ====================================================================
        # Refresh Scheduler Metrics
        # ====================================================================
        self.refresh_attempts_total = Counter(
            "entitlement_refresh_attempts_total",
            "Scheduled refresh attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.refresh_cycle_duration_seconds = Histogram(
            "entitlement_refresh_cycle_duration_seconds",
            "Refresh cycle duration in seconds",
            buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
        )

        self.refresh_due_entities = Gauge(
            "entitlement_refresh_due_entities",
            "Entities selected as due in the last refresh cycle",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "entitlement_errors_total",
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

    def record_webhook_event(self, event_type: str, outcome: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_credit_grant(self, reason: str, amount: int) -> None:
        self.credits_granted_total.labels(reason=reason).inc(amount)

    def record_credit_consume(self, success: bool, amount: int) -> None:
        if success:
            self.credits_consumed_total.inc(amount)
        else:
            self.insufficient_credits_total.inc()

    def record_plan_override(self, action: str) -> None:
        self.plan_overrides_total.labels(action=action).inc()

    def record_refresh_attempt(self, outcome: str) -> None:
        self.refresh_attempts_total.labels(outcome=outcome).inc()

    def record_refresh_cycle(self, due: int, duration: float) -> None:
        self.refresh_due_entities.set(due)
        self.refresh_cycle_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()


class track_duration:
    """
    Context manager measuring wall-clock duration.

    Usage:
        with track_duration() as timer:
            ...
        metrics.record_refresh_cycle(due, timer.elapsed)
    """

    def __init__(self) -> None:
        self.start_time = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "track_duration":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        self.elapsed = time.perf_counter() - self.start_time
