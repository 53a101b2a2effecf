"""
Prometheus metrics module for the Classbook backend.

Service operations are recorded by ``BaseService.measure_operation``; the
domain counters below are incremented by the orchestrators, periodic jobs and
the outbox dispatcher.
"""

from typing import Optional, cast

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "classbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "classbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "classbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

bookings_total = Counter(
    "classbook_bookings_total",
    "Booking outcomes",
    ["outcome"],  # confirmed | waitlisted | payment_failed | replayed
    registry=REGISTRY,
)

cancellations_total = Counter(
    "classbook_cancellations_total",
    "Cancellation outcomes by refund result",
    ["refund"],  # none | completed | pending
    registry=REGISTRY,
)

compensation_failures_total = Counter(
    "classbook_compensation_failures_total",
    "Booking compensations that exhausted their retries",
    registry=REGISTRY,
)

waitlist_promotions_total = Counter(
    "classbook_waitlist_promotions_total",
    "Waitlisted registrations promoted to confirmed",
    registry=REGISTRY,
)

holds_expired_total = Counter(
    "classbook_holds_expired_total",
    "Capacity holds reclaimed after their TTL",
    registry=REGISTRY,
)

occurrences_materialized_total = Counter(
    "classbook_occurrences_materialized_total",
    "Occurrences created by the materializer",
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "classbook_webhook_events_total",
    "Gateway webhook deliveries by outcome",
    ["event_type", "outcome"],  # processed | ignored | duplicate | failed
    registry=REGISTRY,
)

outbox_events_total = Counter(
    "classbook_outbox_events_total",
    "Outbox events by terminal status",
    ["status", "event_type"],
    registry=REGISTRY,
)

outbox_attempt_total = Counter(
    "classbook_outbox_attempt_total",
    "Number of outbox delivery attempts",
    ["event_type"],
    registry=REGISTRY,
)

outbox_dispatch_seconds = Histogram(
    "classbook_outbox_dispatch_seconds",
    "Outbox provider dispatch duration in seconds",
    ["event_type"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
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
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'book')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_outbox_attempt(event_type: str) -> None:
        outbox_attempt_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_outcome(event_type: str, status: str) -> None:
        outbox_events_total.labels(status=status, event_type=event_type).inc()

    @staticmethod
    def observe_outbox_dispatch(event_type: str, duration: float) -> None:
        outbox_dispatch_seconds.labels(event_type=event_type).observe(max(duration, 0.0))

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
