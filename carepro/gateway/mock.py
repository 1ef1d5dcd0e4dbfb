"""
In-memory payment gateway for development and testing.
"""
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from carepro.core.exceptions import GatewayError, GatewayTimeoutError
from carepro.gateway.base import ChargeResult, PaymentGateway, PaymentLinkRequest, TransactionVerification

logger = structlog.get_logger(__name__)


class MockGateway(PaymentGateway):
    """
    Gateway double that records every call.

    Checkouts are "paid" by calling ``settle_checkout``; tokenized charges
    succeed unless an outcome has been queued with ``queue_charge_outcome``.
    Charges are keyed by reference, so a repeated reference returns the
    original result without charging twice.
    """

    def __init__(self, link_base: str = "https://checkout.mock.carepro.test/pay"):
        self.link_base = link_base
        self.checkouts: Dict[str, PaymentLinkRequest] = {}
        self.transactions: Dict[str, TransactionVerification] = {}
        self.charges: Dict[str, ChargeResult] = {}
        self.charge_calls: List[dict] = []
        self._queued_outcomes: List[object] = []
        self.fail_initiation = False

    @property
    def name(self) -> str:
        return "mock"

    def initiate_payment(self, request: PaymentLinkRequest) -> str:
        if self.fail_initiation:
            raise GatewayError("checkout unavailable", operation="initiate_payment")
        self.checkouts[request.transaction_reference] = request
        return f"{self.link_base}/{request.transaction_reference}"

    def settle_checkout(self, transaction_reference: str, amount: Decimal = None, status: str = "successful",
                        token: Optional[str] = "mock-card-token") -> TransactionVerification:
        """Simulate the payer completing a hosted checkout."""
        checkout = self.checkouts[transaction_reference]
        verification = TransactionVerification(
            transaction_id=f"mock-{uuid.uuid4().hex[:12]}",
            transaction_reference=transaction_reference,
            status=status,
            amount=Decimal(amount) if amount is not None else checkout.amount,
            currency=checkout.currency,
            payment_token=token,
            card_last_four="4242" if token else None,
            card_brand="VISA" if token else None,
            card_expiry="12/30" if token else None,
        )
        self.transactions[verification.transaction_id] = verification
        return verification

    def verify_transaction(self, transaction_id: str) -> TransactionVerification:
        verification = self.transactions.get(transaction_id)
        if verification is None:
            raise GatewayError(f"unknown transaction {transaction_id}", operation="verify_transaction")
        return verification

    def verify_by_reference(self, transaction_reference: str) -> Optional[TransactionVerification]:
        charge = self.charges.get(transaction_reference)
        if charge is not None:
            return TransactionVerification(
                transaction_id=charge.transaction_id or "",
                transaction_reference=transaction_reference,
                status="successful" if charge.success else "failed",
                amount=charge.amount or Decimal("0"),
                currency="NGN",
            )
        for verification in self.transactions.values():
            if verification.transaction_reference == transaction_reference:
                return verification
        return None

    def queue_charge_outcome(self, outcome):
        """
        Queue the result of the next tokenized charge.

        ``outcome`` is True (success), a string (decline with that message),
        or an exception instance to raise. A ``("timeout", True)`` tuple
        raises a timeout after recording a successful charge, simulating a
        response lost in transit.
        """
        self._queued_outcomes.append(outcome)

    def charge_with_token(self, token: str, amount: Decimal, currency: str, email: str,
                          transaction_reference: str, narration: str = "") -> ChargeResult:
        self.charge_calls.append({
            "token": token,
            "amount": amount,
            "currency": currency,
            "email": email,
            "transaction_reference": transaction_reference,
        })

        if transaction_reference in self.charges:
            return self.charges[transaction_reference]

        outcome = self._queued_outcomes.pop(0) if self._queued_outcomes else True

        if outcome == ("timeout", True):
            self.charges[transaction_reference] = ChargeResult(
                success=True,
                transaction_reference=transaction_reference,
                transaction_id=f"mock-{uuid.uuid4().hex[:12]}",
                status="successful",
                amount=Decimal(amount),
            )
            raise GatewayTimeoutError(operation="charge_with_token")
        if isinstance(outcome, Exception):
            raise outcome

        if outcome is True:
            result = ChargeResult(
                success=True,
                transaction_reference=transaction_reference,
                transaction_id=f"mock-{uuid.uuid4().hex[:12]}",
                status="successful",
                amount=Decimal(amount),
            )
        else:
            result = ChargeResult(
                success=False,
                transaction_reference=transaction_reference,
                status="failed",
                error_message=str(outcome),
            )

        self.charges[transaction_reference] = result
        logger.debug("Mock charge", transaction_reference=transaction_reference, success=result.success)
        return result
