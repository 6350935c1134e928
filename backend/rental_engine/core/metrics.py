"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking lifecycle
booking_transitions = Counter(
    'booking_transitions_total',
    'Applied booking state transitions',
    ['from_status', 'to_status']
)

transition_conflicts = Counter(
    'booking_transition_conflicts_total',
    'Transitions rejected by the compare-and-swap guard',
    ['to_status']
)

# Availability ledger
reservation_attempts = Counter(
    'availability_reservations_total',
    'Date range reservation attempts',
    ['result']  # reserved, conflict
)

# Payment processor
processor_calls = Counter(
    'payment_processor_calls_total',
    'Calls made to the payment processor',
    ['operation', 'result']  # ok, declined, transient, unknown
)

processor_retries = Counter(
    'payment_processor_retries_total',
    'Processor calls retried after a transient failure',
    ['operation']
)

processor_latency = Histogram(
    'payment_processor_latency_seconds',
    'Payment processor call latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

reconciled_events = Counter(
    'payment_events_reconciled_total',
    'Processor events passed through reconciliation',
    ['action']
)

# Sweeper
sweep_runs = Counter(
    'expiration_sweeps_total',
    'Expiration sweeper passes'
)

sweep_expired = Counter(
    'expiration_sweep_expired_total',
    'Bookings expired by the sweeper',
    ['from_status']
)

sweep_races = Counter(
    'expiration_sweep_races_total',
    'Sweep attempts that lost a compare-and-swap'
)

# Cache
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_transition(from_status: str, to_status: str):
    booking_transitions.labels(from_status=from_status, to_status=to_status).inc()


def record_conflict(to_status: str):
    transition_conflicts.labels(to_status=to_status).inc()


def record_reservation(reserved: bool):
    result = "reserved" if reserved else "conflict"
    reservation_attempts.labels(result=result).inc()


def record_processor_call(operation: str, result: str):
    """Result: ok, declined, transient, unknown"""
    processor_calls.labels(operation=operation, result=result).inc()


def record_cache_operation(operation: str, hit: bool):
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()


def record_processor_retry(operation: str):
    processor_retries.labels(operation=operation).inc()


def observe_processor_latency(operation: str, seconds: float):
    processor_latency.labels(operation=operation).observe(seconds)


def record_reconciled(action: str):
    """Action: confirm, return_to_awaiting_payment, noop, duplicate, unknown"""
    reconciled_events.labels(action=action).inc()


def record_sweep_run():
    sweep_runs.inc()


def record_sweep_expired(from_status: str):
    sweep_expired.labels(from_status=from_status).inc()


def record_sweep_race():
    sweep_races.inc()
