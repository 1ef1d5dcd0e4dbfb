"""
Sentry integration for the CarePro billing service.
Provides exception tracking and performance monitoring.
"""

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
import structlog

from carepro.core.settings import settings

logger = structlog.get_logger(__name__)

SERVICE_NAME = "carepro-billing"
_IGNORED_TRANSACTIONS = ["/healthz", "/readyz", "/metrics"]
_FILTERED_HEADERS = ["authorization", "verif-hash", "flutterwave-signature"]


def init_sentry():
    """Initialize Sentry with API integrations."""
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, skipping Sentry initialization")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.release_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
        attach_stacktrace=True,
        send_default_pii=False,  # card and payer data stays out of Sentry
        max_breadcrumbs=50,
        integrations=[
            FastApiIntegration(
                failed_request_status_codes={*range(500, 600)},
            ),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(monitor_beat_tasks=True),
            LoggingIntegration(level=None, event_level=None),
        ],
        before_send=_before_send_filter,
        before_send_transaction=_before_send_transaction_filter,
    )

    sentry_sdk.set_tag("service", SERVICE_NAME)
    sentry_sdk.set_tag("component", "api")

    logger.info(
        "sentry_initialized",
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )


def init_sentry_worker():
    """Initialize Sentry for the Celery billing worker."""
    if not settings.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.release_version,
        traces_sample_rate=0.05,  # Lower sampling for workers
        attach_stacktrace=True,
        send_default_pii=False,
        integrations=[
            CeleryIntegration(monitor_beat_tasks=True),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(level=None, event_level=None),
        ],
        before_send=_before_send_filter,
    )

    sentry_sdk.set_tag("service", SERVICE_NAME)
    sentry_sdk.set_tag("component", "worker")

    logger.info("sentry_worker_initialized", environment=settings.environment)


def _before_send_filter(event, hint):
    """Strip credentials and tag billing context before sending to Sentry."""
    headers = event.get("request", {}).get("headers", {})
    for header in _FILTERED_HEADERS:
        if header in headers:
            headers[header] = "[Filtered]"

    if event.get("transaction") in _IGNORED_TRANSACTIONS:
        return None

    extra = event.get("extra", {})
    for key in ("subscription_id", "transaction_reference"):
        if extra.get(key):
            event.setdefault("tags", {})[key] = extra[key]

    return event


def _before_send_transaction_filter(event, hint):
    if event.get("transaction") in _IGNORED_TRANSACTIONS:
        return None
    return event


def capture_billing_context(subscription_id: str = None, transaction_reference: str = None,
                            user_id: str = None):
    """Set billing context for the current Sentry scope."""
    scope = sentry_sdk.get_current_scope()
    if subscription_id:
        scope.set_tag("subscription_id", subscription_id)
    if transaction_reference:
        scope.set_tag("transaction_reference", transaction_reference)
    if user_id:
        scope.set_user({"id": user_id})
