"""
Billing scheduler: one pass charges due subscriptions, finalizes ended
cancellations and reconciles abandoned charge claims.
"""
from datetime import datetime
from typing import Callable, Dict, List
from sqlmodel import Session
import structlog

from carepro.api.services.subscriptions import SubscriptionService
from carepro.core.config import SubscriptionStatus, utcnow
from carepro.core.exceptions import ConflictError, PersistenceConflictError
from carepro.core.monitoring import BillingPassMetricsContext, increment_billing_pass_items
from carepro.db.session import engine as default_engine
from carepro.gateway import get_gateway
from carepro.gateway.base import PaymentGateway

logger = structlog.get_logger(__name__)


class BillingScheduler:
    """
    Runs billing passes against the database.

    Every subscription is handled in its own session so one failure never
    blocks the rest of the pass. Overlapping passes are safe: the losing
    writer of a versioned update is counted as skipped.
    """

    def __init__(self, engine=None, gateway: PaymentGateway = None,
                 clock: Callable[[], datetime] = utcnow, batch_size: int = 100):
        self.engine = engine or default_engine
        self.gateway = gateway or get_gateway()
        self.clock = clock
        self.batch_size = batch_size

    def _service(self, session: Session) -> SubscriptionService:
        return SubscriptionService(session=session, gateway=self.gateway, clock=self.clock)

    def _run_each(self, task: str, subscription_ids: List[str],
                  action: Callable[[SubscriptionService, str], str]) -> Dict[str, int]:
        results: Dict[str, int] = {}

        for subscription_id in subscription_ids:
            with Session(self.engine) as session:
                try:
                    result = action(self._service(session), subscription_id)
                except (ConflictError, PersistenceConflictError) as e:
                    # Another worker or request changed the subscription first
                    logger.info("Billing item skipped", task=task, subscription_id=subscription_id, reason=e.message)
                    result = "skipped"
                except Exception as e:
                    session.rollback()
                    logger.error(
                        "Billing item failed",
                        task=task,
                        subscription_id=subscription_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    result = "error"

            results[result] = results.get(result, 0) + 1

        for result, count in results.items():
            increment_billing_pass_items(task, result, count)
        return results

    def _due_ids(self, query: str) -> List[str]:
        with Session(self.engine) as session:
            service = self._service(session)
            return getattr(service, query)(self.clock(), self.batch_size)

    @staticmethod
    def _charge(service: SubscriptionService, subscription_id: str) -> str:
        subscription = service.process_recurring_charge(subscription_id)
        return "charged" if subscription.status == SubscriptionStatus.ACTIVE else "failed"

    @staticmethod
    def _finalize(service: SubscriptionService, subscription_id: str) -> str:
        service.finalize_cancellation(subscription_id)
        return "finalized"

    @staticmethod
    def _reconcile(service: SubscriptionService, subscription_id: str) -> str:
        subscription = service.reconcile_stale_charge(subscription_id)
        return "recovered" if subscription.status == SubscriptionStatus.ACTIVE else "failed"

    def process_due_charges(self) -> Dict[str, int]:
        return self._run_each("charge", self._due_ids("get_due_subscription_ids"), self._charge)

    def finalize_pending_cancellations(self) -> Dict[str, int]:
        return self._run_each("finalize_cancellation", self._due_ids("get_cancellations_due_ids"), self._finalize)

    def reconcile_stale_charges(self) -> Dict[str, int]:
        return self._run_each("reconcile", self._due_ids("get_stale_charge_ids"), self._reconcile)

    def run_once(self) -> Dict[str, Dict[str, int]]:
        """Run one full billing pass and return per-task result counts."""
        with BillingPassMetricsContext():
            # Stale claims first so recovered subscriptions are not charged again in this pass
            summary = {
                "reconcile": self.reconcile_stale_charges(),
                "charge": self.process_due_charges(),
                "finalize_cancellation": self.finalize_pending_cancellations(),
            }

        logger.info("Billing pass completed", **summary)
        return summary
