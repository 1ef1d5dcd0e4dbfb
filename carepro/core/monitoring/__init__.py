"""
Monitoring and observability package for the CarePro billing service.
"""

from .sentry_config import init_sentry, init_sentry_worker, capture_billing_context
from .prometheus_metrics import (
    metrics,
    increment_payment_counter,
    increment_amount_mismatch,
    increment_recurring_charge,
    increment_subscription_transition,
    increment_gateway_error,
    increment_billing_pass_items,
    increment_http_requests,
    observe_http_request_duration,
    increment_webhook_events,
    GatewayMetricsContext,
    BillingPassMetricsContext,
)

__all__ = [
    "init_sentry",
    "init_sentry_worker",
    "capture_billing_context",
    "metrics",
    "increment_payment_counter",
    "increment_amount_mismatch",
    "increment_recurring_charge",
    "increment_subscription_transition",
    "increment_gateway_error",
    "increment_billing_pass_items",
    "increment_http_requests",
    "observe_http_request_duration",
    "increment_webhook_events",
    "GatewayMetricsContext",
    "BillingPassMetricsContext",
]
