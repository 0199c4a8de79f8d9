"""
Prometheus metrics for the booking core.

Tracks:
- Bookings created by service type
- Status transitions
- Ledger transactions by method and outcome
- Webhook events by provider, type and outcome
- Optimistic concurrency conflicts
"""
from prometheus_client import Counter, Histogram

# Booking metrics
bookings_created_total = Counter(
    "bookings_created_total",
    "Total number of bookings created",
    ["service_type"],
)

booking_status_transitions_total = Counter(
    "booking_status_transitions_total",
    "Total booking status transitions",
    ["from_status", "to_status"],
)

# Ledger metrics
ledger_transactions_total = Counter(
    "ledger_transactions_total",
    "Total ledger transaction submissions",
    ["method", "outcome"],  # outcome: recorded, duplicate, verified, rejected
)

ledger_transaction_amount_cents = Histogram(
    "ledger_transaction_amount_cents",
    "Recorded transaction amounts in minor units",
    buckets=(1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events handled",
    ["provider", "event_type", "outcome"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["provider"],
)

# Concurrency metrics
optimistic_lock_conflicts_total = Counter(
    "optimistic_lock_conflicts_total",
    "Booking saves rejected because of a stale version",
    ["operation"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_booking_created(service_type: str) -> None:
        bookings_created_total.labels(service_type=service_type).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        booking_status_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_ledger_transaction(method: str, outcome: str, amount_cents: int = 0) -> None:
        """Record a ledger submission and, when it landed, its amount."""
        ledger_transactions_total.labels(method=method, outcome=outcome).inc()
        if outcome == "recorded" and amount_cents > 0:
            ledger_transaction_amount_cents.observe(amount_cents)

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_total.labels(
            provider=provider, event_type=event_type, outcome=outcome
        ).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure(provider: str) -> None:
        webhook_signature_failures_total.labels(provider=provider).inc()

    @staticmethod
    def record_concurrency_conflict(operation: str) -> None:
        optimistic_lock_conflicts_total.labels(operation=operation).inc()


# Export singleton instance
metrics = MetricsCollector()
