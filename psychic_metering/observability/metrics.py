"""
Metrics Collection with Prometheus.

Exposes metering and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from psychic_metering.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    SWEEP = "sweep"
    OUTCOME = "outcome"
    EVENT = "event"
    ERROR_TYPE = "error_type"


class MeteringMetrics:
    """
    Centralized metrics for the metering service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Availability checks (allowed/denied by billing mode)
    - Sweeps (ticks, duration, per-session outcome)
    - Credits deducted and trials expired
    - Advisor ratings
    - Real-time broadcasts
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "metering_service",
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
            "metering_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "metering_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "metering_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Availability Metrics
        # ====================================================================
        self.availability_checks_total = Counter(
            "metering_availability_checks_total",
            "Total chat availability checks",
            ["available", "mode"],
        )

        # ====================================================================
        # Sweep Metrics
        # ====================================================================
        self.sweep_ticks_total = Counter(
            "metering_sweep_ticks_total",
            "Total sweep ticks executed",
            [MetricLabels.SWEEP],
        )

        self.sweep_duration_seconds = Histogram(
            "metering_sweep_duration_seconds",
            "Sweep tick duration in seconds",
            [MetricLabels.SWEEP],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.sweep_sessions_total = Counter(
            "metering_sweep_sessions_total",
            "Sessions visited by sweeps, by outcome",
            [MetricLabels.SWEEP, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credits_deducted_total = Counter(
            "metering_credits_deducted_total",
            "Total credits deducted from wallets",
            [MetricLabels.OPERATION],
        )

        self.credits_added_total = Counter(
            "metering_credits_added_total",
            "Total credits added to wallets by top-ups",
        )

        self.trials_expired_total = Counter(
            "metering_trials_expired_total",
            "Total free trials marked as used",
        )

        self.feedback_submitted_total = Counter(
            "metering_feedback_submitted_total",
            "Advisor ratings submitted, by star rating",
            ["rating"],
        )

        # ====================================================================
        # Broadcast Metrics
        # ====================================================================
        self.broadcasts_total = Counter(
            "metering_broadcasts_total",
            "Real-time events emitted",
            [MetricLabels.EVENT, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "metering_errors_total",
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

    def record_availability_check(self, available: bool, mode: str) -> None:
        """Record availability check outcome."""
        self.availability_checks_total.labels(available=str(available), mode=mode).inc()

    def record_sweep_tick(self, sweep: str, duration: float) -> None:
        """Record a completed sweep tick."""
        self.sweep_ticks_total.labels(sweep=sweep).inc()
        self.sweep_duration_seconds.labels(sweep=sweep).observe(duration)

    def record_sweep_session(self, sweep: str, outcome: str) -> None:
        """Record what a sweep did with one session (processed, skipped, failed)."""
        self.sweep_sessions_total.labels(sweep=sweep, outcome=outcome).inc()

    def record_credits_deducted(self, operation: str, amount: int) -> None:
        """Record credits removed from a wallet."""
        if amount > 0:
            self.credits_deducted_total.labels(operation=operation).inc(amount)

    def record_broadcast(self, event: str, success: bool) -> None:
        """Record a real-time event emission."""
        self.broadcasts_total.labels(event=event, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = MeteringMetrics()
