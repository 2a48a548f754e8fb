"""
Prometheus metrics for donation monitoring.

Tracks:
- Donation orders created per gateway
- Gateway callbacks and their acknowledgement codes
- Ledger transitions by target status
- Gateway API calls, errors and latency
- Ledger audit discrepancies
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Donation metrics
donation_orders_total = Counter(
    "donation_orders_total",
    "Total number of donation orders",
    ["payment_method", "status"],  # status: created, rejected
)

donation_amount = Histogram(
    "donation_amount",
    "Donation amounts in minor currency units",
    buckets=(1000, 10000, 50000, 100000, 500000, 1000000, 2500000, 5000000),
)

ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Total applied donation status transitions",
    ["target"],
)

# Callback metrics
gateway_callbacks_total = Counter(
    "gateway_callbacks_total",
    "Total gateway callbacks processed",
    ["gateway", "outcome"],  # applied, duplicate, not_found, mismatch, invalid, error
)

gateway_callback_duration_seconds = Histogram(
    "gateway_callback_duration_seconds",
    "Gateway callback processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["gateway", "error_type"],  # transient, permanent, rate_limit, timeout
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Audit metrics
ledger_audit_discrepancies = Gauge(
    "ledger_audit_discrepancies",
    "Campaigns whose current fund disagrees with their successful donations",
)

ledger_audit_discrepancy_amount = Gauge(
    "ledger_audit_discrepancy_amount",
    "Absolute sum of campaign fund discrepancies",
)

ledger_audit_duration_seconds = Histogram(
    "ledger_audit_duration_seconds",
    "Ledger audit duration in seconds",
    buckets=(0.1, 1, 10, 30, 60, 120, 300, 600),
)

ledger_audit_last_run_timestamp = Gauge(
    "ledger_audit_last_run_timestamp",
    "Timestamp of last ledger audit run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_donation_order(payment_method: str, status: str, amount: int) -> None:
        """Record a donation order."""
        donation_orders_total.labels(payment_method=payment_method, status=status).inc()
        if status == "created":
            donation_amount.observe(amount)

    @staticmethod
    def record_ledger_transition(target: str) -> None:
        """Record an applied ledger transition."""
        ledger_transitions_total.labels(target=target).inc()

    @staticmethod
    def record_callback(gateway: str, outcome: str, duration_seconds: float) -> None:
        """Record gateway callback processing."""
        gateway_callbacks_total.labels(gateway=gateway, outcome=outcome).inc()
        gateway_callback_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(
            gateway=gateway, operation=operation, status=status
        ).inc()
        gateway_api_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def set_audit_metrics(
        discrepancy_count: int, discrepancy_amount: int, duration_seconds: float
    ) -> None:
        """Set ledger audit metrics."""
        ledger_audit_discrepancies.set(discrepancy_count)
        ledger_audit_discrepancy_amount.set(discrepancy_amount)
        ledger_audit_duration_seconds.observe(duration_seconds)
        ledger_audit_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
