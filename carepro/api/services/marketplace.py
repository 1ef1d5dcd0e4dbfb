"""
Marketplace collaborator: gigs, orders and contracts as billing sees them.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlmodel import Session
import structlog

from carepro.core.config import CONTRACT_TERMINAL_STATUSES
from carepro.core.exceptions import NotFoundError
from carepro.db.models.marketplace import ClientOrder, Contract, Gig

logger = structlog.get_logger(__name__)


class MarketplaceService:
    """
    Narrow interface onto the marketplace records.

    Writes are added to the caller's session and flushed, so an order
    commits or rolls back together with the payment that created it.
    """

    def __init__(self, session: Session):
        self.session = session

    def get_gig(self, gig_id: str) -> Optional[Gig]:
        return self.session.get(Gig, gig_id)

    def create_order(self, client_id: str, gig_id: str, payment_option: str, amount: Decimal,
                     transaction_id: str, subscription_id: Optional[str] = None) -> str:
        """
        Create the client order for a settled payment.

        Returns:
            The new order id

        Raises:
            NotFoundError: If the gig no longer exists
        """
        gig = self.get_gig(gig_id)
        if gig is None:
            raise NotFoundError("Gig", gig_id)

        order = ClientOrder(
            client_id=client_id,
            gig_id=gig_id,
            caregiver_id=gig.caregiver_id,
            payment_option=payment_option,
            amount=amount,
            transaction_id=transaction_id,
            subscription_id=subscription_id,
        )
        self.session.add(order)
        self.session.flush()

        logger.info(
            "Client order created",
            order_id=order.id,
            client_id=client_id,
            gig_id=gig_id,
            payment_option=payment_option,
            transaction_id=transaction_id,
        )
        return order.id

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        return self.session.get(Contract, contract_id)

    def terminate_contract(self, contract_id: str, reason: str, now: datetime) -> bool:
        """Terminate a contract unless it already ended. Returns True if it changed."""
        contract = self.get_contract(contract_id)
        if contract is None:
            raise NotFoundError("Contract", contract_id)
        if contract.status.lower() in CONTRACT_TERMINAL_STATUSES:
            return False

        contract.status = "terminated"
        contract.terminated_at = now
        contract.termination_reason = reason
        self.session.add(contract)
        self.session.flush()

        logger.info("Contract terminated", contract_id=contract_id)
        return True
