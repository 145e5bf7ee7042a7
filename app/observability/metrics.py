"""
Metrics Collection with Prometheus.

Exposes ledger and system metrics for monitoring.
"""

from enum import Enum
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    RESULT = "result"
    TRANSACTION_KIND = "transaction_kind"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Credit Ledger API.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Ledger appends by transaction kind
    - Debits, refunds, topups and redemptions by outcome
    - Generation status transitions
    - Storage conflicts and retries
    - Reconciliation findings
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
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
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_appends_total = Counter(
            "ledger_appends_total",
            "Transactions appended to the ledger",
            [MetricLabels.TRANSACTION_KIND],
        )

        self.ledger_amount_minor = Histogram(
            "ledger_amount_minor",
            "Absolute transaction amounts in minor units (tenths of a credit)",
            [MetricLabels.TRANSACTION_KIND],
            buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 50000),
        )

        # ====================================================================
        # Operation Outcome Metrics
        # ====================================================================
        self.debits_total = Counter(
            "ledger_debits_total",
            "Debit authorizations by result",
            [MetricLabels.RESULT],
        )

        self.debit_duration_seconds = Histogram(
            "ledger_debit_duration_seconds",
            "Debit authorization duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.refunds_total = Counter(
            "ledger_refunds_total",
            "Refund attempts by result",
            [MetricLabels.RESULT],
        )

        self.topups_total = Counter(
            "ledger_topups_total",
            "Payment confirmations by result",
            [MetricLabels.RESULT],
        )

        self.redemptions_total = Counter(
            "ledger_redemptions_total",
            "Code redemption attempts by result",
            [MetricLabels.RESULT],
        )

        self.adjustments_total = Counter(
            "ledger_adjustments_total",
            "Admin credit adjustments by mode",
            ["mode"],
        )

        self.generation_transitions_total = Counter(
            "ledger_generation_transitions_total",
            "Generation status events by target status and whether they applied",
            ["to_status", "applied"],
        )

        # ====================================================================
        # Storage Metrics
        # ====================================================================
        self.storage_retries_total = Counter(
            "ledger_storage_retries_total",
            "Atomic operations retried after a storage conflict",
            [MetricLabels.OPERATION],
        )

        self.storage_conflicts_exhausted_total = Counter(
            "ledger_storage_conflicts_exhausted_total",
            "Atomic operations that ran out of retries",
            [MetricLabels.OPERATION],
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliation_alerts_total = Counter(
            "ledger_reconciliation_alerts_total",
            "Reconciliation findings requiring manual review",
            ["finding"],
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

    def record_append(self, kind: str, amount_minor: int) -> None:
        """Record a ledger append."""
        self.ledger_appends_total.labels(transaction_kind=kind).inc()
        self.ledger_amount_minor.labels(transaction_kind=kind).observe(abs(amount_minor))

    def record_debit(self, result: str, duration: float) -> None:
        """Record debit authorization metrics."""
        self.debits_total.labels(result=result).inc()
        self.debit_duration_seconds.observe(duration)

    def record_refund(self, result: str) -> None:
        self.refunds_total.labels(result=result).inc()

    def record_topup(self, result: str) -> None:
        self.topups_total.labels(result=result).inc()

    def record_redemption(self, result: str) -> None:
        self.redemptions_total.labels(result=result).inc()

    def record_transition(self, to_status: str, applied: bool) -> None:
        self.generation_transitions_total.labels(to_status=to_status, applied=str(applied)).inc()

    def record_storage_retry(self, operation: str) -> None:
        self.storage_retries_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        handler = get_metrics_handler()
        return Response(content=handler(), media_type=CONTENT_TYPE_LATEST)
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
