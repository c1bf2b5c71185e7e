"""
Prometheus metrics for the HealNest booking service.

Service timings come from ``@BaseService.measure_operation``; the booking
counters below are incremented directly by the orchestrator and the slot
ledger. ``booking_compensation_required_total`` is the alerting hook for
payments that were captured without a session being recorded.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "healnest_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "healnest_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "healnest_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

slot_reservations_total = Counter(
    "healnest_slot_reservations_total",
    "Slot reserve attempts by result",
    ["result"],  # won | lost
    registry=REGISTRY,
)

booking_outcomes_total = Counter(
    "healnest_booking_outcomes_total",
    "Booking attempt outcomes",
    ["outcome"],  # started | confirmed | failed | released | rejected
    registry=REGISTRY,
)

gateway_calls_total = Counter(
    "healnest_gateway_calls_total",
    "Payment gateway calls by operation and result",
    ["operation", "result"],
    registry=REGISTRY,
)

stale_holds_released_total = Counter(
    "healnest_stale_holds_released_total",
    "Holds released by the stale-hold sweep",
    registry=REGISTRY,
)

booking_compensation_required_total = Counter(
    "healnest_booking_compensation_required_total",
    "Payments captured without a recorded session; each one needs manual reconciliation",
    registry=REGISTRY,
)

compensation_backlog = Gauge(
    "healnest_booking_compensation_backlog",
    "Payment intents currently in compensation_required state",
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingOrchestrator')
            operation: Operation name (e.g., 'poll_payment')
            duration: Operation duration in seconds
            status: 'success' or 'error'
            error_type: Exception class name if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_slot_reservation(won: bool) -> None:
        slot_reservations_total.labels(result="won" if won else "lost").inc()

    @staticmethod
    def record_booking_outcome(outcome: str) -> None:
        booking_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, result: str) -> None:
        gateway_calls_total.labels(operation=operation, result=result).inc()

    @staticmethod
    def record_stale_holds_released(count: int) -> None:
        if count > 0:
            stale_holds_released_total.inc(count)

    @staticmethod
    def record_compensation_required() -> None:
        booking_compensation_required_total.inc()

    @staticmethod
    def set_compensation_backlog(count: int) -> None:
        compensation_backlog.set(count)

    @staticmethod
    def get_metrics() -> bytes:
        """Metrics in Prometheus text exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
