"""
Celery tasks for recurring billing.
"""
from celery import Celery
from sqlmodel import Session
import structlog

from carepro.api.services.subscriptions import SubscriptionService
from carepro.core.settings import settings
from carepro.db.session import engine
from carepro.worker.scheduler import BillingScheduler

# Initialize Celery app
celery_app = Celery("carepro_billing")
celery_app.conf.broker_url = settings.redis_url
celery_app.conf.result_backend = settings.redis_url
celery_app.conf.task_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.result_serializer = "json"
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.beat_schedule = {
    "run-billing-cycle": {
        "task": "carepro.worker.tasks.run_billing_cycle",
        "schedule": float(settings.billing_interval_seconds),
    },
}

logger = structlog.get_logger(__name__)


@celery_app.task(name="carepro.worker.tasks.run_billing_cycle")
def run_billing_cycle():
    """Periodic billing pass; overlapping runs are harmless."""
    logger.info("Billing cycle started")
    summary = BillingScheduler().run_once()
    return summary


@celery_app.task(name="carepro.worker.tasks.charge_subscription")
def charge_subscription(subscription_id: str):
    """Charge a single subscription now, for operator-triggered retries."""
    with Session(engine) as session:
        with SubscriptionService(session=session) as service:
            subscription = service.process_recurring_charge(subscription_id)
            logger.info(
                "Ad-hoc charge finished",
                subscription_id=subscription_id,
                status=subscription.status,
            )
            return {"subscription_id": subscription_id, "status": subscription.status}
