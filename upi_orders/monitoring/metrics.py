"""
Prometheus metrics for order lifecycle monitoring.

Tracks:
- Orders created and order amounts
- UTR submissions by outcome
- State transitions
- Expiration sweeps
- Audit trail write failures and retry backlog
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
)

order_amount = Histogram(
    "order_amount",
    "Order amounts",
    buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000),
)

utr_submissions_total = Counter(
    "utr_submissions_total",
    "Total UTR submissions",
    ["outcome"],  # accepted, conflict, rejected, invalid
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

optimistic_conflicts_total = Counter(
    "optimistic_conflicts_total",
    "Conditional updates that lost a race",
    ["operation"],
)

# Sweep metrics
sweep_expired_orders_total = Counter(
    "sweep_expired_orders_total",
    "Total orders expired by the sweeper",
)

sweep_failures_total = Counter(
    "sweep_failures_total",
    "Total per-order sweep failures",
    ["reason"],
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Expiration sweep duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of last expiration sweep",
)

# Audit metrics
audit_entries_written_total = Counter(
    "audit_entries_written_total",
    "Total audit entries written",
    ["action"],
)

audit_write_failures_total = Counter(
    "audit_write_failures_total",
    "Total failed audit writes",
    ["action"],
)

audit_entries_dropped_total = Counter(
    "audit_entries_dropped_total",
    "Audit entries dropped after exhausting retries",
    ["action"],
)

audit_retry_queue_depth = Gauge(
    "audit_retry_queue_depth",
    "Audit entries waiting to be retried",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(amount: float) -> None:
        """Record an order creation."""
        orders_created_total.inc()
        order_amount.observe(amount)

    @staticmethod
    def record_utr_submission(outcome: str) -> None:
        """Record a UTR submission outcome."""
        utr_submissions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record a status transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_optimistic_conflict(operation: str) -> None:
        """Record a lost conditional update."""
        optimistic_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_sweep(expired_count: int, failure_reasons: list, duration_seconds: float) -> None:
        """Record an expiration sweep."""
        sweep_expired_orders_total.inc(expired_count)
        for reason in failure_reasons:
            sweep_failures_total.labels(reason=reason).inc()
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())

    @staticmethod
    def record_audit_written(action: str) -> None:
        """Record a persisted audit entry."""
        audit_entries_written_total.labels(action=action).inc()

    @staticmethod
    def record_audit_failure(action: str) -> None:
        """Record a failed audit write."""
        audit_write_failures_total.labels(action=action).inc()

    @staticmethod
    def record_audit_dropped(action: str) -> None:
        """Record an audit entry given up on."""
        audit_entries_dropped_total.labels(action=action).inc()

    @staticmethod
    def set_audit_retry_queue_depth(depth: int) -> None:
        """Set audit retry backlog size."""
        audit_retry_queue_depth.set(depth)


# Export singleton instance
metrics = MetricsCollector()
