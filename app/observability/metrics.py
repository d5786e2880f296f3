"""
Metrics Collection with Prometheus.

Exposes reconciliation and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    EVENT_TYPE = "event_type"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class ReconcilerMetrics:
    """
    Centralized metrics for the access reconciler.

    Covers:
    - HTTP requests (rate, duration)
    - Webhook notifications by type and outcome
    - State merges (scopes touched, scopes changed, renewals)
    - Backfill sync items by status
    - Scope migrations
    - Access checks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "reconciler_service",
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
            "reconciler_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "reconciler_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "reconciler_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.METHOD],
        )

        # ====================================================================
        # Ingestion Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "reconciler_webhook_events_total",
            "Webhook notifications received",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        self.checkouts_total = Counter(
            "reconciler_checkouts_total",
            "Checkout completions handled",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # State Merger Metrics
        # ====================================================================
        self.merges_total = Counter(
            "reconciler_merges_total",
            "Access state merges applied",
            [MetricLabels.EVENT_TYPE, "changed"],
        )

        self.renewals_recorded_total = Counter(
            "reconciler_renewals_recorded_total",
            "Renewal ledger entries appended",
        )

        self.scope_migrations_total = Counter(
            "reconciler_scope_migrations_total",
            "Purchases migrated from an unmapped to a mapped scope",
        )

        # ====================================================================
        # Sync Metrics
        # ====================================================================
        self.sync_items_total = Counter(
            "reconciler_sync_items_total",
            "Backfill sync items by status",
            ["status", "dry_run"],
        )

        self.sync_duration_seconds = Histogram(
            "reconciler_sync_duration_seconds",
            "Backfill sync run duration in seconds",
            buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        )

        # ====================================================================
        # Access Decision Metrics
        # ====================================================================
        self.access_checks_total = Counter(
            "reconciler_access_checks_total",
            "Access decisions computed",
            ["has_access", "reason"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "reconciler_errors_total",
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
        """Record a webhook notification outcome."""
        self.webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_checkout(self, outcome: str) -> None:
        """Record a checkout completion outcome."""
        self.checkouts_total.labels(outcome=outcome).inc()

    def record_merge(self, event_type: str, changed: bool) -> None:
        """Record one merged (purchase, scope) pair."""
        self.merges_total.labels(event_type=event_type, changed=str(changed)).inc()

    def record_sync_item(self, status: str, dry_run: bool) -> None:
        """Record one backfill sync item."""
        self.sync_items_total.labels(status=status, dry_run=str(dry_run)).inc()

    def record_access_check(self, has_access: bool, reason: str) -> None:
        """Record an access decision."""
        self.access_checks_total.labels(has_access=str(has_access), reason=reason).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ReconcilerMetrics()

