"""
Subscription engine: lifecycle, recurring charges and retry policy.

This service handles:
- Creating subscriptions from settled recurring purchases
- Cancellation, reactivation, termination, pause and resume
- Plan changes and payment-method refresh
- Recurring charges with retry, backoff and suspension
- Subscription queries, client summaries and admin analytics

Every state change goes through an explicit status guard and is written
with a versioned update; a stale write raises PersistenceConflictError.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from sqlalchemy import func, or_
from sqlmodel import Session, select
import structlog

from carepro.core.config import (
    CARD_UPDATE_REFERENCE_PREFIX,
    CHARGEABLE_SUBSCRIPTION_STATUSES,
    INITIAL_PAYMENT_REFERENCE_PREFIX,
    LIVE_SUBSCRIPTION_STATUSES,
    MAX_VISITS_PER_WEEK,
    MIN_VISITS_PER_WEEK,
    RECURRING_REFERENCE_PREFIX,
    WEEKLY_TO_MONTHLY_FACTOR,
    Actor,
    BillingCycle,
    ChargeStatus,
    NotificationType,
    PlanChangeType,
    RecipientRole,
    RefundStatus,
    SubscriptionStatus,
    generate_transaction_reference,
    period_length,
    utcnow,
)
from carepro.core.exceptions import (
    CareProException,
    ConflictError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from carepro.core.monitoring import (
    capture_billing_context,
    increment_recurring_charge,
    increment_subscription_transition,
)
from carepro.core.settings import settings
from carepro.db.models.subscription import (
    PlanChangeRecord,
    Subscription,
    SubscriptionCreate,
    SubscriptionPaymentRecord,
)
from carepro.db.session import commit_or_conflict, engine
from carepro.gateway import get_gateway
from carepro.gateway.base import ChargeResult, PaymentGateway, PaymentLinkRequest
from .fees import calculate_fees
from .ledger import BillingLedgerService
from .marketplace import MarketplaceService
from .notifications import NotificationService

logger = structlog.get_logger(__name__)

ZERO = Decimal("0.00")


class SubscriptionService:
    """
    Service owning every subscription state transition.

    Collaborators (gateway, marketplace, notifier, ledger) and the clock are
    injectable; by default they are built on the service's session.
    """

    def __init__(
        self,
        session: Session = None,
        gateway: PaymentGateway = None,
        marketplace: MarketplaceService = None,
        notifier: NotificationService = None,
        ledger: BillingLedgerService = None,
        clock: Callable[[], datetime] = utcnow,
        max_retry_attempts: int = None,
        backoff_base_hours: int = None,
    ):
        """
        Initialize subscription service.

        Args:
            session: Database session (optional, will create if not provided)
            gateway: Payment gateway (defaults to the configured gateway)
            clock: Callable returning the current naive UTC time
        """
        self.session = session
        self._should_close_session = session is None

        if self.session is None:
            self.session = Session(engine)

        self.gateway = gateway or get_gateway()
        self.marketplace = marketplace or MarketplaceService(self.session)
        self.notifier = notifier or NotificationService(self.session)
        self.ledger = ledger or BillingLedgerService(self.session)
        self.clock = clock
        self.max_retry_attempts = max_retry_attempts or settings.max_retry_attempts
        self.backoff_base_hours = backoff_base_hours or settings.retry_backoff_base_hours

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        if self._should_close_session and self.session:
            self.session.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, subscription_id: str) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    @staticmethod
    def _require_status(subscription: Subscription, allowed: Iterable[SubscriptionStatus], action: str):
        allowed = tuple(allowed)
        if subscription.status not in allowed:
            raise ConflictError(
                f"Cannot {action} a subscription that is {subscription.status}",
                details={
                    "subscription_id": subscription.id,
                    "status": subscription.status,
                    "allowed_statuses": [s.value for s in allowed],
                },
            )

    @staticmethod
    def _require_client(subscription: Subscription, user_id: str):
        if subscription.client_id != user_id:
            raise UnauthorizedActorError("Only the subscribing client can perform this action")

    @staticmethod
    def _require_not_charging(subscription: Subscription, action: str):
        if subscription.status == SubscriptionStatus.CHARGING:
            raise ConflictError(
                f"Cannot {action} while a charge is in progress; retry shortly",
                details={"subscription_id": subscription.id, "status": subscription.status},
            )

    @staticmethod
    def _chargeable_next_date(subscription: Subscription, when: datetime) -> Optional[datetime]:
        """Next charge date if the subscription may be charged at all, else None."""
        if subscription.auto_renew and subscription.payment_token:
            return when
        return None

    def _save(self, subscription: Subscription, event: str):
        subscription.updated_at = self.clock()
        self.session.add(subscription)
        commit_or_conflict(self.session, "Subscription", subscription.id)
        self.session.refresh(subscription)

        increment_subscription_transition(event, subscription.status)
        logger.info(
            "Subscription updated",
            subscription_id=subscription.id,
            transition=event,
            status=subscription.status,
            version=subscription.version,
        )

    def _notify(self, role: RecipientRole, subscription: Subscription, notification_type: NotificationType,
                title: str, content: str):
        try:
            self.notifier.notify(role, subscription, notification_type.value, title, content)
        except Exception as e:
            logger.error(
                "Notification dispatch failed",
                subscription_id=subscription.id,
                notification_type=notification_type.value,
                error=str(e),
            )

    def _notify_parties(self, subscription: Subscription, notification_type: NotificationType,
                        title: str, client_content: str, caregiver_content: str):
        self._notify(RecipientRole.CLIENT, subscription, notification_type, title, client_content)
        self._notify(RecipientRole.CAREGIVER, subscription, notification_type, title, caregiver_content)

    @staticmethod
    def _validate_plan(billing_cycle: str, frequency_per_week: int, errors: List[str]):
        if billing_cycle not in [c.value for c in BillingCycle]:
            errors.append(f"Billing cycle must be one of: {', '.join(c.value for c in BillingCycle)}")
        if not isinstance(frequency_per_week, int) or not MIN_VISITS_PER_WEEK <= frequency_per_week <= MAX_VISITS_PER_WEEK:
            errors.append(f"Frequency per week must be between {MIN_VISITS_PER_WEEK} and {MAX_VISITS_PER_WEEK}")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_subscription(self, request: SubscriptionCreate) -> Subscription:
        """
        Create an active subscription for a settled recurring purchase.

        Args:
            request: Parties, plan and payment method of the new subscription

        Returns:
            The created Subscription

        Raises:
            ValidationError: Listing every invalid field
            ConflictError: If the client already has a live subscription for the gig
        """
        errors = []
        for field_name in ("client_id", "caregiver_id", "gig_id", "original_order_id"):
            if not getattr(request, field_name):
                errors.append(f"{field_name} is required")
        self._validate_plan(request.billing_cycle, request.frequency_per_week, errors)
        if request.price_per_visit is None or Decimal(request.price_per_visit) <= 0:
            errors.append("Price per visit must be greater than zero")
        if errors:
            raise ValidationError("Invalid subscription request", errors=errors)

        breakdown = calculate_fees(request.price_per_visit, request.billing_cycle, request.frequency_per_week)
        if breakdown.total_amount <= 0:
            raise ValidationError("Recurring amount must be greater than zero")

        existing = self.session.exec(
            select(Subscription).where(
                Subscription.client_id == request.client_id,
                Subscription.gig_id == request.gig_id,
                Subscription.status.in_([s.value for s in LIVE_SUBSCRIPTION_STATUSES]),
            )
        ).first()
        if existing:
            raise ConflictError(
                "Client already has an active subscription for this gig",
                details={"subscription_id": existing.id},
            )

        now = self.clock()
        period_end = now + period_length(request.billing_cycle)

        subscription = Subscription(
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            gig_id=request.gig_id,
            original_order_id=request.original_order_id,
            contract_id=request.contract_id,
            billing_cycle=request.billing_cycle,
            frequency_per_week=request.frequency_per_week,
            price_per_visit=breakdown.base_price,
            recurring_amount=breakdown.total_amount,
            currency=request.currency,
            price_breakdown={k: str(v) for k, v in breakdown.to_dict().items()},
            status=SubscriptionStatus.ACTIVE.value,
            auto_renew=True,
            current_period_start=now,
            current_period_end=period_end,
            billing_cycles_completed=1,
            max_retry_attempts=self.max_retry_attempts,
            payment_token=request.payment_token,
            card_last_four=request.card_last_four,
            card_brand=request.card_brand,
            card_expiry=request.card_expiry,
            email=request.email,
            created_at=now,
            updated_at=now,
        )
        subscription.next_charge_date = self._chargeable_next_date(subscription, period_end)
        subscription.append_payment(SubscriptionPaymentRecord(
            transaction_reference=f"{INITIAL_PAYMENT_REFERENCE_PREFIX}-{request.original_order_id}",
            gateway_transaction_id=request.initial_transaction_id,
            amount=breakdown.total_amount,
            currency=request.currency,
            status=ChargeStatus.SUCCESSFUL.value,
            billing_cycle_number=1,
            attempted_at=now,
            completed_at=now,
            client_order_id=request.original_order_id,
        ))

        self.session.add(subscription)
        commit_or_conflict(
            self.session,
            "Subscription",
            duplicate_message="Client already has an active subscription for this gig",
        )
        self.session.refresh(subscription)
        increment_subscription_transition("create", subscription.status)

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            client_id=subscription.client_id,
            gig_id=subscription.gig_id,
            billing_cycle=subscription.billing_cycle,
            recurring_amount=str(subscription.recurring_amount),
            has_payment_token=bool(subscription.payment_token),
        )

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_CREATED,
            "Subscription started",
            f"Your {subscription.billing_cycle} care subscription is active. "
            f"Next payment of {subscription.currency} {subscription.recurring_amount} "
            f"is due on {period_end:%Y-%m-%d}.",
            f"A client started a {subscription.billing_cycle} subscription "
            f"({subscription.frequency_per_week} visits per week).",
        )
        return subscription

    # ------------------------------------------------------------------
    # Client and admin lifecycle actions
    # ------------------------------------------------------------------

    def cancel_subscription(self, subscription_id: str, user_id: str, reason: Optional[str] = None) -> Subscription:
        """Cancel at period end; service continues until the current period ends."""
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        self._require_status(subscription, [SubscriptionStatus.ACTIVE], "cancel")

        now = self.clock()
        subscription.status = SubscriptionStatus.PENDING_CANCELLATION.value
        subscription.cancel_at_period_end = True
        subscription.cancellation_requested_at = now
        subscription.cancellation_reason = reason
        subscription.cancelled_by = Actor.CLIENT.value
        subscription.auto_renew = False
        subscription.next_charge_date = None
        self._save(subscription, "cancel")

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_CANCELLED,
            "Subscription cancelled",
            f"Your subscription will end on {subscription.current_period_end:%Y-%m-%d}. "
            "You will not be charged again.",
            f"The client cancelled their subscription. Service continues until "
            f"{subscription.current_period_end:%Y-%m-%d}.",
        )
        return subscription

    def reactivate_subscription(self, subscription_id: str, user_id: str) -> Subscription:
        """Undo a pending cancellation before the period ends."""
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        self._require_status(subscription, [SubscriptionStatus.PENDING_CANCELLATION], "reactivate")

        now = self.clock()
        if now >= subscription.current_period_end:
            raise ConflictError(
                "The billing period has already ended; start a new subscription instead",
                details={"subscription_id": subscription.id},
            )

        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.cancel_at_period_end = False
        subscription.cancellation_requested_at = None
        subscription.cancellation_reason = None
        subscription.cancelled_by = None
        subscription.auto_renew = True
        subscription.next_charge_date = self._chargeable_next_date(subscription, subscription.current_period_end)
        self._save(subscription, "reactivate")

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_REACTIVATED,
            "Subscription reactivated",
            "Your subscription has been reactivated and will renew automatically.",
            "The client reactivated their subscription.",
        )
        return subscription

    def terminate_subscription(self, subscription_id: str, user_id: str, reason: str,
                               issue_refund: bool = True, is_admin: bool = False) -> Subscription:
        """
        End a subscription immediately.

        Args:
            subscription_id: Subscription to terminate
            user_id: Acting user; must be the client or caregiver unless is_admin
            reason: Termination reason recorded on the subscription
            issue_refund: Whether to compute a pro-rated refund for the unused period
            is_admin: Whether the actor is an administrator

        Returns:
            The terminated Subscription; refund_amount holds any computed refund
        """
        subscription = self._get(subscription_id)

        if is_admin:
            actor = Actor.ADMIN
        elif user_id == subscription.client_id:
            actor = Actor.CLIENT
        elif user_id == subscription.caregiver_id:
            actor = Actor.CAREGIVER
        else:
            raise UnauthorizedActorError("Only the client, the caregiver or an admin can terminate this subscription")

        if subscription.is_terminal():
            raise ConflictError(
                f"Subscription is already {subscription.status}",
                details={"subscription_id": subscription.id, "status": subscription.status},
            )
        self._require_not_charging(subscription, "terminate")

        now = self.clock()
        refund = ZERO
        if issue_refund:
            refund = subscription.calculate_pro_rated_refund(now)

        subscription.status = SubscriptionStatus.TERMINATED.value
        subscription.auto_renew = False
        subscription.next_charge_date = None
        subscription.terminated_at = now
        subscription.termination_reason = reason
        subscription.cancelled_by = actor.value
        subscription.refund_amount = refund if issue_refund else None
        subscription.refund_status = (RefundStatus.PENDING_REVIEW if refund > 0 else RefundStatus.NONE).value

        if subscription.contract_id:
            try:
                self.marketplace.terminate_contract(subscription.contract_id, reason, now)
            except NotFoundError:
                logger.warning(
                    "Linked contract missing during termination",
                    subscription_id=subscription.id,
                    contract_id=subscription.contract_id,
                )

        self._save(subscription, "terminate")

        logger.info(
            "Subscription terminated",
            subscription_id=subscription.id,
            actor=actor.value,
            refund_amount=str(refund),
        )

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_TERMINATED,
            "Subscription terminated",
            f"Your subscription has been terminated. Reason: {reason}",
            f"The subscription has been terminated. Reason: {reason}",
        )
        if refund > 0:
            # Refunds are executed manually after review
            self._notify(
                RecipientRole.ADMINS,
                subscription,
                NotificationType.REFUND_REVIEW,
                "Refund pending review",
                f"Pro-rated refund of {subscription.currency} {refund} computed for "
                f"subscription {subscription.id}.",
            )
        return subscription

    def pause_subscription(self, subscription_id: str, user_id: str, reason: Optional[str] = None) -> Subscription:
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        self._require_status(subscription, [SubscriptionStatus.ACTIVE], "pause")

        subscription.status = SubscriptionStatus.PAUSED.value
        subscription.next_charge_date = None
        self._save(subscription, "pause")

        logger.info("Subscription paused", subscription_id=subscription.id, reason=reason)
        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_PAUSED,
            "Subscription paused",
            "Your subscription is paused. You will not be charged until you resume it.",
            "The client paused their subscription.",
        )
        return subscription

    def resume_subscription(self, subscription_id: str, user_id: str) -> Subscription:
        """Resume a paused subscription with a fresh billing period starting now."""
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        self._require_status(subscription, [SubscriptionStatus.PAUSED], "resume")

        now = self.clock()
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.auto_renew = True
        subscription.current_period_start = now
        subscription.current_period_end = now + period_length(subscription.billing_cycle)
        subscription.next_charge_date = self._chargeable_next_date(subscription, subscription.current_period_end)
        self._save(subscription, "resume")

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_RESUMED,
            "Subscription resumed",
            f"Your subscription is active again. Next payment is due on "
            f"{subscription.current_period_end:%Y-%m-%d}.",
            "The client resumed their subscription.",
        )
        return subscription

    def change_plan(self, subscription_id: str, user_id: str, new_billing_cycle: str,
                    new_frequency_per_week: int, reason: Optional[str] = None) -> Tuple[Subscription, PlanChangeRecord]:
        """
        Change billing cycle and/or visit frequency.

        The new amount applies from the next charge; the current period and
        next charge date are left as they are.

        Raises:
            ValidationError: Invalid cycle or frequency, or nothing changes
            ConflictError: Subscription is not active
        """
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        self._require_status(subscription, [SubscriptionStatus.ACTIVE], "change the plan of")

        errors = []
        self._validate_plan(new_billing_cycle, new_frequency_per_week, errors)
        if not errors and (new_billing_cycle == subscription.billing_cycle
                           and new_frequency_per_week == subscription.frequency_per_week):
            errors.append("New plan is the same as the current plan")
        if errors:
            raise ValidationError("Invalid plan change", errors=errors)

        breakdown = calculate_fees(subscription.price_per_visit, new_billing_cycle, new_frequency_per_week)
        previous_amount = Decimal(subscription.recurring_amount)
        change_type = PlanChangeType.UPGRADE if breakdown.total_amount > previous_amount else PlanChangeType.DOWNGRADE

        record = PlanChangeRecord(
            previous_billing_cycle=subscription.billing_cycle,
            new_billing_cycle=new_billing_cycle,
            previous_frequency_per_week=subscription.frequency_per_week,
            new_frequency_per_week=new_frequency_per_week,
            previous_amount=previous_amount,
            new_amount=breakdown.total_amount,
            change_type=change_type.value,
            changed_at=self.clock(),
            effective_date=subscription.current_period_end,
            reason=reason,
        )

        subscription.append_plan_change(record)
        subscription.billing_cycle = new_billing_cycle
        subscription.frequency_per_week = new_frequency_per_week
        subscription.recurring_amount = breakdown.total_amount
        subscription.price_breakdown = {k: str(v) for k, v in breakdown.to_dict().items()}
        self._save(subscription, "change_plan")

        self._notify_parties(
            subscription,
            NotificationType.PLAN_CHANGED,
            "Plan changed",
            f"Your plan is now {new_billing_cycle}, {new_frequency_per_week} visits per week. "
            f"From {record.effective_date:%Y-%m-%d} you will be charged "
            f"{subscription.currency} {breakdown.total_amount}.",
            f"The client changed their plan to {new_billing_cycle}, "
            f"{new_frequency_per_week} visits per week ({change_type.value}).",
        )
        return subscription, record

    # ------------------------------------------------------------------
    # Payment method
    # ------------------------------------------------------------------

    def initiate_payment_method_update(self, subscription_id: str, user_id: str,
                                       redirect_url: Optional[str] = None, email: Optional[str] = None) -> Dict[str, str]:
        """
        Start a card verification checkout for a new payment method.

        Returns:
            Dictionary with the checkout link and its transaction reference
        """
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        if subscription.is_terminal():
            raise ConflictError(f"Cannot update the payment method of a {subscription.status} subscription")

        payer_email = email or subscription.email
        if not payer_email:
            raise ValidationError("An email address is required to verify a new card")

        reference = generate_transaction_reference(CARD_UPDATE_REFERENCE_PREFIX, self.clock())
        link = self.gateway.initiate_payment(PaymentLinkRequest(
            transaction_reference=reference,
            amount=settings.card_verification_amount,
            currency=subscription.currency,
            email=payer_email,
            redirect_url=redirect_url,
            title="CarePro Card Verification",
            description="Card verification for your CarePro subscription",
        ))

        subscription.pending_method_reference = reference
        subscription.email = payer_email
        self._save(subscription, "payment_method_initiated")

        return {"payment_link": link, "transaction_reference": reference}

    def complete_payment_method_update(self, subscription_id: str, user_id: str, transaction_id: str) -> Subscription:
        """
        Store the card from a verified checkout and lift any payment hold.

        A suspended or past-due subscription becomes active again and is due
        for charging immediately.
        """
        subscription = self._get(subscription_id)
        self._require_client(subscription, user_id)
        if subscription.is_terminal():
            raise ConflictError(f"Cannot update the payment method of a {subscription.status} subscription")
        self._require_not_charging(subscription, "update the payment method")

        verification = self.gateway.verify_and_extract_token(transaction_id)
        if verification is None:
            raise ConflictError("Card verification did not succeed or returned no reusable card")
        if (not subscription.pending_method_reference
                or verification.transaction_reference != subscription.pending_method_reference):
            logger.warning(
                "Card verification reference mismatch",
                subscription_id=subscription.id,
                expected=subscription.pending_method_reference,
                received=verification.transaction_reference,
            )
            raise ConflictError("Verified transaction does not belong to this payment method update")

        return self.update_payment_method(
            subscription,
            payment_token=verification.payment_token,
            card_last_four=verification.card_last_four,
            card_brand=verification.card_brand,
            card_expiry=verification.card_expiry,
        )

    def update_payment_method(self, subscription: Subscription, payment_token: str,
                              card_last_four: Optional[str] = None, card_brand: Optional[str] = None,
                              card_expiry: Optional[str] = None) -> Subscription:
        now = self.clock()
        previous_status = subscription.status

        subscription.payment_token = payment_token
        subscription.card_last_four = card_last_four
        subscription.card_brand = card_brand
        subscription.card_expiry = card_expiry
        subscription.pending_method_reference = None
        subscription.failed_charge_attempts = 0
        subscription.last_charge_error = None

        if subscription.status in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.PAST_DUE):
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.auto_renew = True
            subscription.next_charge_date = now
        elif subscription.status == SubscriptionStatus.ACTIVE and subscription.next_charge_date is None:
            subscription.next_charge_date = self._chargeable_next_date(subscription, subscription.current_period_end)

        self._save(subscription, "payment_method_updated")

        logger.info(
            "Payment method updated",
            subscription_id=subscription.id,
            previous_status=previous_status,
            status=subscription.status,
            card_last_four=card_last_four,
        )
        self._notify(
            RecipientRole.CLIENT,
            subscription,
            NotificationType.PAYMENT_METHOD_UPDATED,
            "Payment method updated",
            f"Your card ending in {card_last_four or '****'} will be used for future payments.",
        )
        return subscription

    # ------------------------------------------------------------------
    # Recurring charges
    # ------------------------------------------------------------------

    def process_recurring_charge(self, subscription_id: str) -> Subscription:
        """
        Charge one due subscription.

        The subscription is first claimed (status charging) with a versioned
        write, so a concurrent scheduler pass loses with
        PersistenceConflictError before any money moves. The gateway call
        happens outside the transaction.

        Raises:
            ConflictError: Not active/past-due, auto-renew off, no card or not yet due
            PersistenceConflictError: Another worker claimed the subscription first
        """
        now = self.clock()
        subscription = self._get(subscription_id)
        self._require_status(subscription, CHARGEABLE_SUBSCRIPTION_STATUSES, "charge")
        if not subscription.auto_renew:
            raise ConflictError("Auto-renew is off for this subscription")
        if not subscription.payment_token:
            raise ConflictError("No payment method on file")
        if subscription.next_charge_date is None or subscription.next_charge_date > now:
            raise ConflictError("Subscription is not due for charging")

        capture_billing_context(subscription_id=subscription.id, user_id=subscription.client_id)

        reference = generate_transaction_reference(RECURRING_REFERENCE_PREFIX, now)
        previous_reference = subscription.unresolved_charge_reference
        record = SubscriptionPaymentRecord(
            transaction_reference=reference,
            amount=Decimal(subscription.recurring_amount),
            currency=subscription.currency,
            billing_cycle_number=subscription.billing_cycles_completed + 1,
            attempted_at=now,
        )

        subscription.status = SubscriptionStatus.CHARGING.value
        subscription.charge_reference = reference
        subscription.charge_started_at = now
        subscription.last_charge_attempt_at = now
        subscription.append_payment(record)
        self._save(subscription, "charge_claimed")

        if previous_reference:
            try:
                result = self._find_successful_charge(previous_reference)
            except GatewayError as e:
                return self._apply_charge_failure(
                    subscription, record,
                    f"Could not confirm earlier charge {previous_reference}: {e.message}",
                    unresolved_reference=previous_reference,
                )
            if result is not None:
                logger.info(
                    "Earlier timed-out charge had succeeded",
                    subscription_id=subscription.id,
                    transaction_reference=previous_reference,
                )
                record.transaction_reference = previous_reference
                return self._apply_charge_success(subscription, record, result)

        try:
            result = self.gateway.charge_with_token(
                token=subscription.payment_token,
                amount=Decimal(subscription.recurring_amount),
                currency=subscription.currency,
                email=subscription.email or "",
                transaction_reference=reference,
                narration=f"CarePro {subscription.billing_cycle} subscription",
            )
        except GatewayTimeoutError:
            return self._apply_charge_failure(
                subscription, record,
                "Payment gateway timed out; charge outcome unknown",
                unresolved_reference=reference,
            )
        except GatewayError as e:
            return self._apply_charge_failure(subscription, record, e.message)

        if result.success:
            return self._apply_charge_success(subscription, record, result)
        return self._apply_charge_failure(subscription, record, result.error_message or "Charge declined")

    def _find_successful_charge(self, transaction_reference: str) -> Optional[ChargeResult]:
        verification = self.gateway.verify_by_reference(transaction_reference)
        if verification is None or not verification.successful:
            return None
        return ChargeResult(
            success=True,
            transaction_reference=transaction_reference,
            transaction_id=verification.transaction_id,
            status=verification.status,
            amount=verification.amount,
        )

    def _release_claim(self, subscription: Subscription):
        subscription.charge_reference = None
        subscription.charge_started_at = None

    def _apply_charge_success(self, subscription: Subscription, record: SubscriptionPaymentRecord,
                              result: ChargeResult) -> Subscription:
        now = self.clock()
        length = period_length(subscription.billing_cycle)

        order_id = None
        try:
            order_id = self.marketplace.create_order(
                client_id=subscription.client_id,
                gig_id=subscription.gig_id,
                payment_option=subscription.billing_cycle,
                amount=Decimal(subscription.recurring_amount),
                transaction_id=result.transaction_id,
                subscription_id=subscription.id,
            )
        except CareProException as e:
            logger.error(
                "Recurring charge succeeded but order creation failed",
                subscription_id=subscription.id,
                transaction_reference=record.transaction_reference,
                error=e.message,
            )

        record.status = ChargeStatus.SUCCESSFUL.value
        record.gateway_transaction_id = result.transaction_id
        record.completed_at = now
        record.client_order_id = order_id
        subscription.replace_payment(record)

        self._release_claim(subscription)
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.unresolved_charge_reference = None
        subscription.current_period_start = now
        subscription.current_period_end = now + length
        subscription.next_charge_date = self._chargeable_next_date(subscription, subscription.current_period_end)
        subscription.billing_cycles_completed += 1
        subscription.failed_charge_attempts = 0
        subscription.last_charge_error = None
        self._save(subscription, "charge_succeeded")

        increment_recurring_charge(subscription.billing_cycle, "success")
        logger.info(
            "Recurring charge succeeded",
            subscription_id=subscription.id,
            transaction_reference=record.transaction_reference,
            billing_cycle_number=record.billing_cycle_number,
            next_charge_date=subscription.next_charge_date.isoformat() if subscription.next_charge_date else None,
        )

        self._export_charge(subscription, record)
        self._notify(
            RecipientRole.CLIENT,
            subscription,
            NotificationType.SUBSCRIPTION_RENEWED,
            "Subscription renewed",
            f"We charged {subscription.currency} {record.amount} for your care subscription. "
            f"Your next payment is due on {subscription.current_period_end:%Y-%m-%d}.",
        )
        return subscription

    def _export_charge(self, subscription: Subscription, record: SubscriptionPaymentRecord):
        breakdown = subscription.price_breakdown or {}
        try:
            self.ledger.record_billing_event(
                order_id=record.client_order_id,
                subscription_id=subscription.id,
                contract_id=subscription.contract_id,
                caregiver_id=subscription.caregiver_id,
                client_id=subscription.client_id,
                gig_id=subscription.gig_id,
                billing_cycle_number=record.billing_cycle_number,
                service_type=subscription.billing_cycle,
                frequency_per_week=subscription.frequency_per_week,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                next_charge_date=subscription.next_charge_date,
                amount_paid=record.amount,
                order_fee=Decimal(breakdown.get("order_fee", "0")),
                service_charge=Decimal(breakdown.get("service_charge", "0")),
                gateway_fees=Decimal(breakdown.get("gateway_fee", "0")),
                currency=subscription.currency,
                payment_transaction_id=record.gateway_transaction_id,
            )
        except Exception as e:
            self.session.rollback()
            logger.error(
                "Billing record export failed",
                subscription_id=subscription.id,
                transaction_reference=record.transaction_reference,
                error=str(e),
            )

    def _apply_charge_failure(self, subscription: Subscription, record: SubscriptionPaymentRecord,
                              error: str, unresolved_reference: Optional[str] = None) -> Subscription:
        now = self.clock()
        record.status = ChargeStatus.FAILED.value
        record.error_message = error
        record.completed_at = now
        subscription.replace_payment(record)

        self._release_claim(subscription)
        subscription.unresolved_charge_reference = unresolved_reference
        self._register_failure(subscription, error, now)
        self._save(subscription, "charge_failed")

        increment_recurring_charge(subscription.billing_cycle, "failure")
        self._notify_failure(subscription, error)
        return subscription

    def _register_failure(self, subscription: Subscription, error: str, now: datetime):
        """Retry policy: back off by base^(n-1) hours, suspend after max attempts."""
        subscription.failed_charge_attempts += 1
        subscription.last_charge_error = error
        subscription.last_charge_attempt_at = now

        if subscription.failed_charge_attempts >= subscription.max_retry_attempts:
            subscription.status = SubscriptionStatus.SUSPENDED.value
            subscription.next_charge_date = None
        else:
            delay_hours = self.backoff_base_hours ** (subscription.failed_charge_attempts - 1)
            subscription.status = SubscriptionStatus.PAST_DUE.value
            subscription.next_charge_date = now + timedelta(hours=delay_hours)

        logger.warning(
            "Recurring charge failed",
            subscription_id=subscription.id,
            failed_attempts=subscription.failed_charge_attempts,
            status=subscription.status,
            next_charge_date=subscription.next_charge_date.isoformat() if subscription.next_charge_date else None,
            error=error,
        )

    def _notify_failure(self, subscription: Subscription, error: str):
        if subscription.status == SubscriptionStatus.SUSPENDED:
            self._notify(
                RecipientRole.CLIENT,
                subscription,
                NotificationType.SUBSCRIPTION_SUSPENDED,
                "Subscription suspended",
                f"We could not charge your card after {subscription.failed_charge_attempts} attempts. "
                "Update your payment method to resume care.",
            )
            self._notify(
                RecipientRole.CAREGIVER,
                subscription,
                NotificationType.SUBSCRIPTION_SUSPENDED,
                "Subscription suspended",
                "A client's subscription was suspended after repeated payment failures.",
            )
        else:
            self._notify(
                RecipientRole.CLIENT,
                subscription,
                NotificationType.PAYMENT_FAILED,
                "Payment failed",
                f"We could not charge your card ({error}). We will retry on "
                f"{subscription.next_charge_date:%Y-%m-%d %H:%M} UTC.",
            )

    def record_charge_failure(self, subscription_id: str, error: str) -> Subscription:
        """Apply the retry policy for a failure reported outside a charge attempt."""
        subscription = self._get(subscription_id)
        self._require_status(subscription, CHARGEABLE_SUBSCRIPTION_STATUSES, "record a failed charge on")

        self._register_failure(subscription, error, self.clock())
        self._save(subscription, "charge_failed")
        increment_recurring_charge(subscription.billing_cycle, "failure")
        self._notify_failure(subscription, error)
        return subscription

    def reconcile_stale_charge(self, subscription_id: str) -> Subscription:
        """
        Settle a charge claim whose worker never reported back.

        The gateway is asked about the claimed reference: a successful charge
        is applied, anything else counts as a failed attempt.
        """
        now = self.clock()
        subscription = self._get(subscription_id)
        self._require_status(subscription, [SubscriptionStatus.CHARGING], "reconcile")
        cutoff = now - timedelta(seconds=settings.charge_claim_timeout_seconds)
        if subscription.charge_started_at and subscription.charge_started_at > cutoff:
            raise ConflictError("Charge claim has not timed out yet")

        pending = [
            r for r in subscription.get_payment_history()
            if r.status == ChargeStatus.PENDING and r.transaction_reference == subscription.charge_reference
        ]
        if not pending:
            raise ConflictError("No pending charge record for the claimed reference")
        record = pending[-1]

        result = self._find_successful_charge(subscription.charge_reference)
        if result is not None:
            return self._apply_charge_success(subscription, record, result)
        return self._apply_charge_failure(subscription, record, "Charge claim expired without a confirmed payment")

    def finalize_cancellation(self, subscription_id: str) -> Subscription:
        """Move a pending cancellation to cancelled once its period has ended."""
        now = self.clock()
        subscription = self._get(subscription_id)
        self._require_status(subscription, [SubscriptionStatus.PENDING_CANCELLATION], "finalize cancellation of")
        if not subscription.cancel_at_period_end:
            raise ConflictError("Subscription is not set to cancel at period end")
        if subscription.current_period_end > now:
            raise ConflictError("Billing period has not ended yet")

        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.auto_renew = False
        subscription.terminated_at = now
        subscription.next_charge_date = None
        self._save(subscription, "finalize_cancellation")

        self._notify_parties(
            subscription,
            NotificationType.SUBSCRIPTION_CANCELLED,
            "Subscription ended",
            "Your subscription has ended. We hope to see you again.",
            "A client's subscription has ended.",
        )
        return subscription

    # ------------------------------------------------------------------
    # Scheduler queries
    # ------------------------------------------------------------------

    def get_due_subscription_ids(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or self.clock()
        statement = select(Subscription.id).where(
            Subscription.status.in_([s.value for s in CHARGEABLE_SUBSCRIPTION_STATUSES]),
            Subscription.auto_renew == True,  # noqa: E712
            Subscription.payment_token.is_not(None),
            Subscription.next_charge_date.is_not(None),
            Subscription.next_charge_date <= now,
        ).order_by(Subscription.next_charge_date).limit(limit)
        return list(self.session.exec(statement).all())

    def get_cancellations_due_ids(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or self.clock()
        statement = select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.PENDING_CANCELLATION.value,
            Subscription.cancel_at_period_end == True,  # noqa: E712
            Subscription.current_period_end <= now,
        ).limit(limit)
        return list(self.session.exec(statement).all())

    def get_stale_charge_ids(self, now: Optional[datetime] = None, limit: int = 100) -> List[str]:
        now = now or self.clock()
        cutoff = now - timedelta(seconds=settings.charge_claim_timeout_seconds)
        statement = select(Subscription.id).where(
            Subscription.status == SubscriptionStatus.CHARGING.value,
            Subscription.charge_started_at <= cutoff,
        ).limit(limit)
        return list(self.session.exec(statement).all())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription:
        return self._get(subscription_id)

    def get_subscription_for_user(self, subscription_id: str, user_id: str, is_admin: bool = False) -> Subscription:
        subscription = self._get(subscription_id)
        if not is_admin and user_id not in (subscription.client_id, subscription.caregiver_id):
            raise UnauthorizedActorError("You do not have access to this subscription")
        return subscription

    def get_by_order(self, order_id: str) -> Subscription:
        subscription = self.session.exec(
            select(Subscription).where(Subscription.original_order_id == order_id)
        ).first()
        if subscription is None:
            raise NotFoundError("Subscription for order", order_id)
        return subscription

    def list_for_client(self, client_id: str) -> List[Subscription]:
        return list(self.session.exec(
            select(Subscription).where(Subscription.client_id == client_id).order_by(Subscription.created_at.desc())
        ).all())

    def list_for_caregiver(self, caregiver_id: str) -> List[Subscription]:
        return list(self.session.exec(
            select(Subscription).where(Subscription.caregiver_id == caregiver_id).order_by(Subscription.created_at.desc())
        ).all())

    def list_all(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Subscription]:
        statement = select(Subscription)
        if status:
            try:
                status = SubscriptionStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown subscription status: {status}")
            statement = statement.where(Subscription.status == status)
        statement = statement.order_by(Subscription.created_at.desc()).offset(offset).limit(limit)
        return list(self.session.exec(statement).all())

    def get_payment_history(self, subscription: Subscription) -> List[SubscriptionPaymentRecord]:
        return sorted(subscription.get_payment_history(), key=lambda r: r.attempted_at, reverse=True)

    def get_plan_history(self, subscription: Subscription) -> List[PlanChangeRecord]:
        return sorted(subscription.get_plan_changes(), key=lambda r: r.changed_at, reverse=True)

    def link_contract(self, subscription_id: str, contract_id: str) -> Subscription:
        subscription = self._get(subscription_id)
        if self.marketplace.get_contract(contract_id) is None:
            raise NotFoundError("Contract", contract_id)
        subscription.contract_id = contract_id
        self._save(subscription, "link_contract")
        return subscription

    @staticmethod
    def monthly_value(subscription: Subscription) -> Decimal:
        amount = Decimal(subscription.recurring_amount)
        if subscription.billing_cycle == BillingCycle.WEEKLY:
            return (amount * WEEKLY_TO_MONTHLY_FACTOR).quantize(Decimal("0.01"))
        return amount

    def get_client_summary(self, client_id: str) -> dict:
        """Live subscription count, monthly spend and next payment for a client."""
        subscriptions = self.list_for_client(client_id)
        live = [
            s for s in subscriptions
            if s.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CHARGING, SubscriptionStatus.PAST_DUE,
                            SubscriptionStatus.PENDING_CANCELLATION)
        ]
        billable = [s for s in live if s.status != SubscriptionStatus.PENDING_CANCELLATION]
        upcoming = sorted((s for s in billable if s.next_charge_date), key=lambda s: s.next_charge_date)
        next_payment = upcoming[0] if upcoming else None

        return {
            "client_id": client_id,
            "active_subscriptions": len(live),
            "total_subscriptions": len(subscriptions),
            "monthly_spend": str(sum((self.monthly_value(s) for s in billable), ZERO)),
            "next_payment_date": next_payment.next_charge_date.isoformat() if next_payment else None,
            "next_payment_amount": str(next_payment.recurring_amount) if next_payment else None,
            "subscriptions": [s.to_dict() for s in subscriptions],
        }

    def get_analytics(self) -> dict:
        """Admin overview: counts by status, monthly recurring revenue and churn."""
        now = self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        counts = dict(self.session.exec(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        ).all())

        revenue_generating = self.session.exec(
            select(Subscription).where(
                Subscription.status.in_([SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CHARGING.value])
            )
        ).all()
        mrr = sum((self.monthly_value(s) for s in revenue_generating), ZERO)

        new_this_month = self.session.exec(
            select(func.count(Subscription.id)).where(Subscription.created_at >= month_start)
        ).one()
        cancellations_this_month = self.session.exec(
            select(func.count(Subscription.id)).where(
                or_(
                    Subscription.cancellation_requested_at >= month_start,
                    Subscription.terminated_at >= month_start,
                )
            )
        ).one()

        total_active = counts.get(SubscriptionStatus.ACTIVE.value, 0) + counts.get(SubscriptionStatus.CHARGING.value, 0)
        churn_rate = round(cancellations_this_month / max(1, total_active) * 100, 2)

        return {
            "total_active": total_active,
            "total_past_due": counts.get(SubscriptionStatus.PAST_DUE.value, 0),
            "total_suspended": counts.get(SubscriptionStatus.SUSPENDED.value, 0),
            "total_paused": counts.get(SubscriptionStatus.PAUSED.value, 0),
            "total_pending_cancellation": counts.get(SubscriptionStatus.PENDING_CANCELLATION.value, 0),
            "total_cancelled": counts.get(SubscriptionStatus.CANCELLED.value, 0),
            "total_terminated": counts.get(SubscriptionStatus.TERMINATED.value, 0),
            "monthly_recurring_revenue": str(mrr),
            "new_this_month": new_this_month,
            "cancellations_this_month": cancellations_this_month,
            "churn_rate": churn_rate,
            "generated_at": now.isoformat(),
        }
