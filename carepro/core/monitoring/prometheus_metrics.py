"""
Prometheus metrics for the CarePro billing service.
Covers payment settlement, recurring charges, the gateway and the scheduler.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, CONTENT_TYPE_LATEST, generate_latest
from fastapi import Response
import time
import structlog

logger = structlog.get_logger(__name__)

# Create custom registry for our metrics
registry = CollectorRegistry()

# One-time payment metrics
payments_total = Counter(
    'carepro_payments_total',
    'One-time payments by resulting status',
    ['service_type', 'status'],
    registry=registry
)

amount_mismatches = Counter(
    'carepro_payment_amount_mismatches_total',
    'Payments rejected because the paid amount did not match',
    registry=registry
)

# Recurring billing metrics
recurring_charges_total = Counter(
    'carepro_recurring_charges_total',
    'Recurring charge attempts by outcome',
    ['billing_cycle', 'outcome'],
    registry=registry
)

subscription_transitions = Counter(
    'carepro_subscription_transitions_total',
    'Subscription lifecycle transitions',
    ['event', 'to_status'],
    registry=registry
)

# Gateway metrics
gateway_errors = Counter(
    'carepro_gateway_errors_total',
    'Total number of payment gateway errors',
    ['gateway', 'error_type'],
    registry=registry
)

gateway_request_duration = Histogram(
    'carepro_gateway_request_duration_seconds',
    'Payment gateway request duration in seconds',
    ['gateway', 'operation'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, float('inf')],
    registry=registry
)

# Scheduler metrics
billing_pass_duration = Histogram(
    'carepro_billing_pass_duration_seconds',
    'Duration of one billing scheduler pass',
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, float('inf')],
    registry=registry
)

billing_pass_items = Counter(
    'carepro_billing_pass_items_total',
    'Subscriptions handled by the scheduler',
    ['task', 'result'],
    registry=registry
)

# HTTP Metrics
http_requests_total = Counter(
    'carepro_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

http_request_duration = Histogram(
    'carepro_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf')],
    registry=registry
)

# Webhook Metrics
webhook_events = Counter(
    'carepro_webhook_events_total',
    'Total webhook events processed',
    ['event_type', 'status'],
    registry=registry
)

# Health Check Metrics
health_check_duration = Histogram(
    'carepro_health_check_duration_seconds',
    'Health check duration in seconds',
    ['check_type', 'service'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float('inf')],
    registry=registry
)

health_check_status = Gauge(
    'carepro_health_check_status',
    'Health check status (1=healthy, 0=unhealthy)',
    ['service'],
    registry=registry
)


class MetricsCollector:
    """Centralized metrics collection and helper methods."""

    def __init__(self):
        self.registry = registry

    def get_metrics_response(self) -> Response:
        """Return Prometheus metrics as HTTP response."""
        metrics_data = generate_latest(self.registry)
        return Response(
            content=metrics_data,
            media_type=CONTENT_TYPE_LATEST
        )


# Global metrics collector instance
metrics = MetricsCollector()


# Helper functions for common metric operations
def increment_payment_counter(service_type: str, status: str):
    """Increment one-time payment counter with labels."""
    payments_total.labels(service_type=service_type, status=status).inc()


def increment_amount_mismatch():
    amount_mismatches.inc()


def increment_recurring_charge(billing_cycle: str, outcome: str):
    """Increment recurring charge counter."""
    recurring_charges_total.labels(billing_cycle=billing_cycle, outcome=outcome).inc()
    logger.debug(
        "recurring_charge_recorded",
        billing_cycle=billing_cycle,
        outcome=outcome
    )


def increment_subscription_transition(event: str, to_status: str):
    subscription_transitions.labels(event=event, to_status=to_status).inc()


def increment_gateway_error(gateway: str, error_type: str):
    """Increment gateway error counter."""
    gateway_errors.labels(gateway=gateway, error_type=error_type).inc()
    logger.warning(
        "gateway_error_recorded",
        gateway=gateway,
        error_type=error_type
    )


def observe_gateway_request_duration(gateway: str, operation: str, duration_seconds: float):
    """Record gateway request duration."""
    gateway_request_duration.labels(gateway=gateway, operation=operation).observe(duration_seconds)


def observe_billing_pass_duration(duration_seconds: float):
    billing_pass_duration.observe(duration_seconds)


def increment_billing_pass_items(task: str, result: str, amount: int = 1):
    if amount:
        billing_pass_items.labels(task=task, result=result).inc(amount)


def increment_http_requests(method: str, endpoint: str, status_code: str):
    """Increment HTTP request counter."""
    http_requests_total.labels(method=method, endpoint=endpoint, status_code=status_code).inc()


def observe_http_request_duration(method: str, endpoint: str, duration_seconds: float):
    """Record HTTP request duration."""
    http_request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)


def increment_webhook_events(event_type: str, status: str):
    """Increment webhook event counter."""
    webhook_events.labels(event_type=event_type, status=status).inc()


def observe_health_check_duration(check_type: str, service: str, duration_seconds: float):
    """Record health check duration."""
    health_check_duration.labels(check_type=check_type, service=service).observe(duration_seconds)


def set_health_check_status(service: str, is_healthy: bool):
    """Set health check status."""
    health_check_status.labels(service=service).set(1 if is_healthy else 0)


# Context managers for automatic metric recording
class GatewayMetricsContext:
    """Context manager for automatic gateway metrics recording."""

    def __init__(self, gateway: str, operation: str):
        self.gateway = gateway
        self.operation = operation
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            duration = time.time() - self.start_time
            observe_gateway_request_duration(self.gateway, self.operation, duration)
            if exc_type:
                increment_gateway_error(self.gateway, exc_type.__name__)


class BillingPassMetricsContext:
    """Times a scheduler pass."""

    def __init__(self):
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            observe_billing_pass_duration(time.time() - self.start_time)
