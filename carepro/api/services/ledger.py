"""
Billing ledger export.
"""

from sqlmodel import Session
import structlog

from carepro.db.models.billing import BillingRecord

logger = structlog.get_logger(__name__)


class BillingLedgerService:
    """Writes a BillingRecord for every settled charge."""

    def __init__(self, session: Session):
        self.session = session

    def record_billing_event(self, **fields) -> BillingRecord:
        record = BillingRecord(**fields)
        self.session.add(record)
        self.session.commit()

        logger.info(
            "Billing record created",
            billing_record_id=record.id,
            order_id=record.order_id,
            subscription_id=record.subscription_id,
            billing_cycle_number=record.billing_cycle_number,
        )
        return record
