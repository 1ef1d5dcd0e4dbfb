"""
One-time payment ledger.

Creates PendingPayment records at checkout and settles them exactly once
when the gateway confirms the payment.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
import structlog

from carepro.core.config import (
    PURCHASABLE_GIG_STATUSES,
    PURCHASABLE_SERVICE_TYPES,
    MAX_VISITS_PER_WEEK,
    MIN_VISITS_PER_WEEK,
    REFERENCE_PREFIX,
    PaymentStatus,
    ServiceType,
    generate_transaction_reference,
    utcnow,
)
from carepro.core.exceptions import (
    AmountMismatchError,
    CareProException,
    ConflictError,
    GatewayError,
    NotFoundError,
    PaymentError,
    PersistenceConflictError,
    UnauthorizedActorError,
    ValidationError,
)
from carepro.core.monitoring import (
    capture_billing_context,
    increment_amount_mismatch,
    increment_payment_counter,
)
from carepro.core.settings import settings
from carepro.db.models.payment import PaymentInitiate, PendingPayment
from carepro.db.models.subscription import SubscriptionCreate
from carepro.db.session import commit_or_conflict, engine
from carepro.gateway import get_gateway
from carepro.gateway.base import PaymentGateway, PaymentLinkRequest
from .fees import calculate_fees, to_amount
from .ledger import BillingLedgerService
from .marketplace import MarketplaceService
from .notifications import NotificationService
from .subscriptions import SubscriptionService

logger = structlog.get_logger(__name__)

ORDER_CREATION_FAILED_MESSAGE = "Payment received but failed to create order. Please contact support."


class PaymentService:
    """
    Service for one-time gig payments.

    Completion claims the record (pending -> processing) with a versioned
    write before the order is created, so a replayed or concurrent
    confirmation can never create a second order.
    """

    def __init__(
        self,
        session: Session = None,
        gateway: PaymentGateway = None,
        marketplace: MarketplaceService = None,
        ledger: BillingLedgerService = None,
        notifier: NotificationService = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self._should_close_session = session is None

        if self.session is None:
            self.session = Session(engine)

        self.gateway = gateway or get_gateway()
        self.marketplace = marketplace or MarketplaceService(self.session)
        self.ledger = ledger or BillingLedgerService(self.session)
        self.notifier = notifier or NotificationService(self.session)
        self.clock = clock

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if self._should_close_session and self.session:
            self.session.close()

    def _get_by_reference(self, transaction_reference: str) -> PendingPayment:
        payment = self.session.exec(
            select(PendingPayment).where(PendingPayment.transaction_reference == transaction_reference)
        ).first()
        if payment is None:
            raise NotFoundError("Payment", transaction_reference)
        return payment

    def _save(self, payment: PendingPayment):
        payment.updated_at = self.clock()
        self.session.add(payment)
        commit_or_conflict(self.session, "Payment", payment.transaction_reference)
        self.session.refresh(payment)

    @staticmethod
    def _validate_request(request: PaymentInitiate):
        errors = []
        if not request.gig_id:
            errors.append("gig_id is required")
        if request.service_type not in [s.value for s in PURCHASABLE_SERVICE_TYPES]:
            errors.append(
                f"Service type must be one of: {', '.join(s.value for s in PURCHASABLE_SERVICE_TYPES)}"
            )
        if not isinstance(request.frequency_per_week, int) or not (
                MIN_VISITS_PER_WEEK <= request.frequency_per_week <= MAX_VISITS_PER_WEEK):
            errors.append(f"Frequency per week must be between {MIN_VISITS_PER_WEEK} and {MAX_VISITS_PER_WEEK}")
        if not request.email or "@" not in request.email:
            errors.append("A valid email address is required")
        if not request.redirect_url or not request.redirect_url.startswith(("http://", "https://")):
            errors.append("Redirect URL must be an absolute http(s) URL")
        if errors:
            raise ValidationError("Invalid payment request", errors=errors)

    def create_pending_payment(self, client_id: str, request: PaymentInitiate) -> PendingPayment:
        """
        Start checkout for a gig.

        Args:
            client_id: Paying client
            request: Gig, service type, frequency, payer email and redirect URL

        Returns:
            The pending payment, carrying the hosted checkout link

        Raises:
            ValidationError: Listing every invalid field
            NotFoundError: If the gig does not exist
            ConflictError: If the gig cannot be purchased
            GatewayError: If the gateway returned no checkout link
        """
        self._validate_request(request)

        gig = self.marketplace.get_gig(request.gig_id)
        if gig is None:
            raise NotFoundError("Gig", request.gig_id)
        if (gig.status or "").lower() not in PURCHASABLE_GIG_STATUSES:
            raise ConflictError(
                f"Gig is not available for purchase (status: {gig.status})",
                details={"gig_id": gig.id, "status": gig.status},
            )

        breakdown = calculate_fees(gig.price, request.service_type, request.frequency_per_week)
        now = self.clock()
        reference = generate_transaction_reference(REFERENCE_PREFIX, now)

        link = self.gateway.initiate_payment(PaymentLinkRequest(
            transaction_reference=reference,
            amount=breakdown.total_amount,
            currency=settings.default_currency,
            email=request.email,
            redirect_url=request.redirect_url,
            title=settings.payment_title,
            description=f"{gig.title or 'Care service'} ({request.service_type})",
            save_card=request.service_type != ServiceType.ONE_TIME,
        ))
        if not link:
            raise GatewayError("no checkout link returned", operation="initiate_payment")

        payment = PendingPayment(
            transaction_reference=reference,
            gig_id=gig.id,
            client_id=client_id,
            email=request.email,
            service_type=request.service_type,
            frequency_per_week=request.frequency_per_week,
            base_price=breakdown.base_price,
            order_fee=breakdown.order_fee,
            service_charge=breakdown.service_charge,
            gateway_fee=breakdown.gateway_fee,
            total_amount=breakdown.total_amount,
            currency=settings.default_currency,
            redirect_url=request.redirect_url,
            payment_link=link,
            status=PaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        commit_or_conflict(self.session, "Payment", reference)
        self.session.refresh(payment)

        increment_payment_counter(payment.service_type, PaymentStatus.PENDING.value)
        logger.info(
            "Pending payment created",
            transaction_reference=reference,
            client_id=client_id,
            gig_id=gig.id,
            service_type=payment.service_type,
            total_amount=str(payment.total_amount),
        )
        return payment

    def complete_payment(self, transaction_reference: str, gateway_transaction_id: str,
                         paid_amount) -> PendingPayment:
        """
        Settle a payment confirmed by the gateway.

        Completing an already completed payment returns it unchanged.

        Raises:
            NotFoundError: Unknown reference
            AmountMismatchError: Paid amount differs from the expected total
            ConflictError: Payment already failed
            PersistenceConflictError: Another request is completing the payment
            PaymentError: Money captured but the order could not be created
        """
        capture_billing_context(transaction_reference=transaction_reference)
        payment = self._get_by_reference(transaction_reference)

        if payment.status == PaymentStatus.COMPLETED:
            logger.info(
                "Payment already completed",
                transaction_reference=transaction_reference,
                client_order_id=payment.client_order_id,
            )
            return payment
        if payment.status == PaymentStatus.AMOUNT_MISMATCH:
            raise AmountMismatchError(transaction_reference, payment.total_amount, to_amount(paid_amount))
        if payment.status == PaymentStatus.FAILED:
            raise ConflictError(
                "Payment has already failed",
                details={"transaction_reference": transaction_reference, "status": payment.status},
            )
        if payment.status == PaymentStatus.PROCESSING:
            raise PersistenceConflictError("Payment", transaction_reference)

        paid = to_amount(paid_amount)
        expected = Decimal(payment.total_amount)
        if abs(paid - expected) > settings.amount_tolerance:
            payment.status = PaymentStatus.AMOUNT_MISMATCH.value
            payment.gateway_transaction_id = gateway_transaction_id
            payment.error_message = f"Amount mismatch: expected {expected}, paid {paid}"
            self._save(payment)

            increment_amount_mismatch()
            increment_payment_counter(payment.service_type, payment.status)
            logger.critical(
                "Payment amount mismatch",
                transaction_reference=transaction_reference,
                gateway_transaction_id=gateway_transaction_id,
                expected=str(expected),
                paid=str(paid),
            )
            raise AmountMismatchError(transaction_reference, expected, paid)

        # Claim the payment; a concurrent completion fails here with a stale write
        payment.status = PaymentStatus.PROCESSING.value
        payment.gateway_transaction_id = gateway_transaction_id
        self._save(payment)

        try:
            order_id = self.marketplace.create_order(
                client_id=payment.client_id,
                gig_id=payment.gig_id,
                payment_option=payment.service_type,
                amount=expected,
                transaction_id=gateway_transaction_id,
            )
            payment.status = PaymentStatus.COMPLETED.value
            payment.client_order_id = order_id
            payment.completed_at = self.clock()
            payment.error_message = None
            self._save(payment)
        except (CareProException, SQLAlchemyError) as e:
            self.session.rollback()
            logger.error(
                "Order creation failed after payment",
                transaction_reference=transaction_reference,
                gateway_transaction_id=gateway_transaction_id,
                error=str(e),
            )
            payment = self._get_by_reference(transaction_reference)
            payment.status = PaymentStatus.FAILED.value
            payment.error_message = ORDER_CREATION_FAILED_MESSAGE
            self._save(payment)
            increment_payment_counter(payment.service_type, payment.status)
            raise PaymentError(ORDER_CREATION_FAILED_MESSAGE, transaction_reference=transaction_reference)

        increment_payment_counter(payment.service_type, payment.status)
        logger.info(
            "Payment completed",
            transaction_reference=transaction_reference,
            gateway_transaction_id=gateway_transaction_id,
            client_order_id=order_id,
        )

        self._export_payment(payment)
        if payment.service_type != ServiceType.ONE_TIME:
            self._start_subscription(payment)
        return payment

    def _export_payment(self, payment: PendingPayment):
        gig = self.marketplace.get_gig(payment.gig_id)
        try:
            self.ledger.record_billing_event(
                order_id=payment.client_order_id,
                caregiver_id=gig.caregiver_id if gig else None,
                client_id=payment.client_id,
                gig_id=payment.gig_id,
                billing_cycle_number=1,
                service_type=payment.service_type,
                frequency_per_week=payment.frequency_per_week,
                amount_paid=payment.total_amount,
                order_fee=payment.order_fee,
                service_charge=payment.service_charge,
                gateway_fees=payment.gateway_fee,
                currency=payment.currency,
                payment_transaction_id=payment.gateway_transaction_id,
            )
        except Exception as e:
            self.session.rollback()
            logger.error(
                "Billing record export failed",
                transaction_reference=payment.transaction_reference,
                error=str(e),
            )

    def _start_subscription(self, payment: PendingPayment):
        """Create the recurring subscription for a settled recurring purchase."""
        try:
            gig = self.marketplace.get_gig(payment.gig_id)
            if gig is None:
                raise NotFoundError("Gig", payment.gig_id)
            verification = self.gateway.verify_and_extract_token(payment.gateway_transaction_id)
            if verification is None:
                logger.warning(
                    "Recurring purchase has no reusable card token",
                    transaction_reference=payment.transaction_reference,
                )

            engine_service = SubscriptionService(
                session=self.session,
                gateway=self.gateway,
                marketplace=self.marketplace,
                notifier=self.notifier,
                ledger=self.ledger,
                clock=self.clock,
            )
            subscription = engine_service.create_subscription(SubscriptionCreate(
                client_id=payment.client_id,
                caregiver_id=gig.caregiver_id,
                gig_id=payment.gig_id,
                original_order_id=payment.client_order_id,
                billing_cycle=payment.service_type,
                frequency_per_week=payment.frequency_per_week,
                price_per_visit=payment.base_price,
                currency=payment.currency,
                email=payment.email,
                payment_token=verification.payment_token if verification else None,
                card_last_four=verification.card_last_four if verification else None,
                card_brand=verification.card_brand if verification else None,
                card_expiry=verification.card_expiry if verification else None,
                initial_transaction_id=payment.gateway_transaction_id,
            ))
            logger.info(
                "Subscription started from payment",
                transaction_reference=payment.transaction_reference,
                subscription_id=subscription.id,
            )
        except Exception as e:
            self.session.rollback()
            logger.error(
                "Subscription creation after payment failed",
                transaction_reference=payment.transaction_reference,
                client_order_id=payment.client_order_id,
                error=str(e),
            )

    def fail_payment(self, transaction_reference: str, reason: str) -> PendingPayment:
        """Mark a pending payment as failed (payer abandoned or gateway declined)."""
        payment = self._get_by_reference(transaction_reference)
        if payment.status != PaymentStatus.PENDING:
            raise ConflictError(
                f"Cannot fail a payment that is {payment.status}",
                details={"transaction_reference": transaction_reference, "status": payment.status},
            )

        payment.status = PaymentStatus.FAILED.value
        payment.error_message = reason
        self._save(payment)

        increment_payment_counter(payment.service_type, payment.status)
        logger.info("Payment failed", transaction_reference=transaction_reference, reason=reason)
        return payment

    def get_payment(self, transaction_reference: str) -> PendingPayment:
        return self._get_by_reference(transaction_reference)

    def get_payment_status(self, transaction_reference: str) -> dict:
        return self._get_by_reference(transaction_reference).to_dict()

    def get_payment_for_user(self, transaction_reference: str, user_id: str,
                             is_admin: bool = False) -> PendingPayment:
        payment = self._get_by_reference(transaction_reference)
        if not is_admin and payment.client_id != user_id:
            raise UnauthorizedActorError("You do not have access to this payment")
        return payment
