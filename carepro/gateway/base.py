"""
Base interface for payment gateways.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class PaymentLinkRequest:
    """Hosted checkout request for a one-time payment or card verification."""
    transaction_reference: str
    amount: Decimal
    currency: str
    email: str
    redirect_url: Optional[str] = None
    title: str = "CarePro Service Payment"
    description: str = ""
    save_card: bool = True


@dataclass
class TransactionVerification:
    """Gateway view of a completed checkout transaction."""
    transaction_id: str
    transaction_reference: str
    status: str
    amount: Decimal
    currency: str
    payment_token: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    card_expiry: Optional[str] = None

    @property
    def successful(self) -> bool:
        return self.status == "successful"


@dataclass
class ChargeResult:
    """Outcome of a tokenized charge."""
    success: bool
    transaction_reference: str
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Decimal] = None
    error_message: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway used by the payment ledger and subscription engine."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway name identifier."""

    @abstractmethod
    def initiate_payment(self, request: PaymentLinkRequest) -> str:
        """
        Create a hosted checkout and return its link.

        Raises:
            GatewayError: On transport failure or when no link is returned
        """

    @abstractmethod
    def verify_transaction(self, transaction_id: str) -> TransactionVerification:
        """
        Fetch the authoritative status and amount of a transaction.

        Raises:
            GatewayError: On transport failure or unknown transaction
        """

    def verify_and_extract_token(self, transaction_id: str) -> Optional[TransactionVerification]:
        """
        Verify a transaction and return it with the reusable card token.

        Returns:
            The verification, or None when the transaction did not succeed
            or carries no card token

        Raises:
            GatewayError: On transport failure or unknown transaction
        """
        verification = self.verify_transaction(transaction_id)
        if not verification.successful or not verification.payment_token:
            return None
        return verification

    @abstractmethod
    def charge_with_token(self, token: str, amount: Decimal, currency: str, email: str,
                          transaction_reference: str, narration: str = "") -> ChargeResult:
        """
        Charge a stored card token.

        The transaction reference is the idempotency key: the gateway rejects
        a second charge carrying the same reference.

        Returns:
            ChargeResult; a declined charge is a result, not an exception

        Raises:
            GatewayTimeoutError: When the outcome is unknown
            GatewayError: On transport failure
        """

    @abstractmethod
    def verify_by_reference(self, transaction_reference: str) -> Optional[TransactionVerification]:
        """
        Look up a transaction by merchant reference.

        Returns:
            The verification, or None if the gateway never recorded the reference
        """
