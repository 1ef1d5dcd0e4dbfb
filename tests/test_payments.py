"""
Tests for the one-time payment ledger.

Tests cover:
- Checkout creation and request validation
- Exactly-once settlement and replays
- Amount verification with tolerance
- Order creation failures after capture
- Subscription start for recurring purchases
"""

import re
import warnings
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlmodel import select

from carepro.api.services.payments import ORDER_CREATION_FAILED_MESSAGE
from carepro.core.config import PaymentStatus, SubscriptionStatus, utcnow
from carepro.core.exceptions import (
    AmountMismatchError,
    ConflictError,
    GatewayError,
    NotFoundError,
    PaymentError,
    PersistenceConflictError,
    UnauthorizedActorError,
    ValidationError,
)
from carepro.db.models import BillingRecord, ClientOrder, PaymentInitiate, PendingPayment, Subscription


def checkout_request(gig_id, service_type="one-time", frequency_per_week=1):
    return PaymentInitiate(
        gig_id=gig_id,
        service_type=service_type,
        frequency_per_week=frequency_per_week,
        email="client-1@example.com",
        redirect_url="https://app.carepro.test/payments/done",
    )


class TestCreatePendingPayment:
    """Checkout creation."""

    def test_create_pending_payment(self, payment_service, gateway, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        assert re.match(r"^CAREPRO-20250115-[0-9A-F]{8}$", payment.transaction_reference)
        assert payment.status == PaymentStatus.PENDING
        assert payment.total_amount == Decimal("1115.40")
        assert payment.payment_link.endswith(payment.transaction_reference)

        checkout = gateway.checkouts[payment.transaction_reference]
        assert checkout.amount == Decimal("1115.40")
        assert checkout.save_card is False

    def test_monthly_checkout_saves_card(self, payment_service, gateway, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id, "monthly", 3))

        assert payment.total_amount == Decimal("13384.80")
        assert payment.order_fee == Decimal("12000.00")
        assert gateway.checkouts[payment.transaction_reference].save_card is True

    def test_every_invalid_field_is_reported(self, payment_service):
        request = PaymentInitiate(
            gig_id="",
            service_type="weekly",
            frequency_per_week=9,
            email="not-an-email",
            redirect_url="ftp://elsewhere",
        )

        with pytest.raises(ValidationError) as exc_info:
            payment_service.create_pending_payment("client-1", request)

        assert len(exc_info.value.errors) == 5

    def test_unknown_gig(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.create_pending_payment("client-1", checkout_request("missing-gig"))

    def test_paused_gig_cannot_be_bought(self, payment_service, session, helpers):
        gig = helpers.create_gig(session, status="paused")

        with pytest.raises(ConflictError):
            payment_service.create_pending_payment("client-1", checkout_request(gig.id))

    def test_gateway_failure_leaves_no_record(self, payment_service, gateway, session, gig):
        gateway.fail_initiation = True

        with pytest.raises(GatewayError):
            payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        assert session.exec(select(PendingPayment)).all() == []


class TestCompletePayment:
    """Settlement of confirmed payments."""

    def test_complete_creates_one_order(self, payment_service, gateway, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        verification = gateway.settle_checkout(payment.transaction_reference)

        completed = payment_service.complete_payment(
            payment.transaction_reference, verification.transaction_id, verification.amount
        )

        assert completed.status == PaymentStatus.COMPLETED
        assert completed.client_order_id is not None
        assert completed.completed_at is not None

        order = session.get(ClientOrder, completed.client_order_id)
        assert order.client_id == "client-1"
        assert order.transaction_id == verification.transaction_id
        assert order.payment_option == "one-time"

        billing = session.exec(select(BillingRecord)).all()
        assert len(billing) == 1
        assert billing[0].amount_paid == Decimal("1115.40")

    def test_replay_returns_same_payment(self, payment_service, gateway, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        verification = gateway.settle_checkout(payment.transaction_reference)

        first = payment_service.complete_payment(
            payment.transaction_reference, verification.transaction_id, verification.amount
        )
        second = payment_service.complete_payment(
            payment.transaction_reference, verification.transaction_id, verification.amount
        )

        assert second.client_order_id == first.client_order_id
        assert len(session.exec(select(ClientOrder)).all()) == 1

    def test_amount_mismatch_is_terminal(self, payment_service, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        with pytest.raises(AmountMismatchError):
            payment_service.complete_payment(payment.transaction_reference, "flw-1", Decimal("100.00"))

        stored = payment_service.get_payment(payment.transaction_reference)
        assert stored.status == PaymentStatus.AMOUNT_MISMATCH
        assert stored.client_order_id is None

        # Replaying with the right amount does not rescue it
        with pytest.raises(AmountMismatchError):
            payment_service.complete_payment(payment.transaction_reference, "flw-1", payment.total_amount)
        assert session.exec(select(ClientOrder)).all() == []

    def test_amount_within_tolerance_is_accepted(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        completed = payment_service.complete_payment(
            payment.transaction_reference, "flw-1", payment.total_amount + Decimal("0.01")
        )
        assert completed.status == PaymentStatus.COMPLETED

    def test_amount_just_outside_tolerance_is_rejected(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        with pytest.raises(AmountMismatchError):
            payment_service.complete_payment(
                payment.transaction_reference, "flw-1", payment.total_amount - Decimal("0.02")
            )

    def test_unknown_reference(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.complete_payment("CAREPRO-20250115-DEADBEEF", "flw-1", "10.00")

    def test_failed_payment_cannot_complete(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        payment_service.fail_payment(payment.transaction_reference, "Checkout cancelled by payer")

        with pytest.raises(ConflictError):
            payment_service.complete_payment(payment.transaction_reference, "flw-1", payment.total_amount)

    def test_processing_payment_is_a_concurrent_completion(self, payment_service, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        payment.status = PaymentStatus.PROCESSING.value
        session.add(payment)
        session.commit()

        with pytest.raises(PersistenceConflictError):
            payment_service.complete_payment(payment.transaction_reference, "flw-1", payment.total_amount)

    def test_order_failure_marks_payment_failed(self, payment_service, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        session.delete(gig)
        session.commit()

        with pytest.raises(PaymentError) as exc_info:
            payment_service.complete_payment(payment.transaction_reference, "flw-1", payment.total_amount)

        assert exc_info.value.message == ORDER_CREATION_FAILED_MESSAGE
        stored = payment_service.get_payment(payment.transaction_reference)
        assert stored.status == PaymentStatus.FAILED
        assert stored.error_message == ORDER_CREATION_FAILED_MESSAGE
        assert stored.gateway_transaction_id == "flw-1"

    def test_stale_write_is_rejected(self, payment_service, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        # Another writer bumps the row version behind this session's back
        session.connection().execute(
            text("UPDATE pending_payments SET version = version + 1 WHERE id = :id"),
            {"id": payment.id},
        )

        with pytest.raises(PersistenceConflictError):
            payment_service.fail_payment(payment.transaction_reference, "abandoned")


class TestRecurringPurchase:
    """Monthly purchases start a subscription on settlement."""

    def test_monthly_purchase_starts_subscription(self, payment_service, gateway, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id, "monthly", 3))
        verification = gateway.settle_checkout(payment.transaction_reference)

        completed = payment_service.complete_payment(
            payment.transaction_reference, verification.transaction_id, verification.amount
        )

        subscription = session.exec(select(Subscription)).one()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.original_order_id == completed.client_order_id
        assert subscription.recurring_amount == Decimal("13384.80")
        assert subscription.payment_token == "mock-card-token"
        assert subscription.card_last_four == "4242"
        assert subscription.caregiver_id == gig.caregiver_id
        assert subscription.billing_cycles_completed == 1

        history = subscription.get_payment_history()
        assert len(history) == 1
        assert history[0].transaction_reference == f"INIT-{completed.client_order_id}"
        assert history[0].gateway_transaction_id == verification.transaction_id

    def test_missing_card_token_starts_unscheduled_subscription(self, payment_service, gateway, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id, "monthly", 1))
        verification = gateway.settle_checkout(payment.transaction_reference, token=None)

        completed = payment_service.complete_payment(
            payment.transaction_reference, verification.transaction_id, verification.amount
        )

        assert completed.status == PaymentStatus.COMPLETED
        subscription = session.exec(select(Subscription)).one()
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.original_order_id == completed.client_order_id
        assert subscription.payment_token is None
        assert subscription.card_last_four is None
        assert subscription.next_charge_date is None

    def test_one_time_purchase_starts_no_subscription(self, payment_service, gateway, session, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        verification = gateway.settle_checkout(payment.transaction_reference)

        payment_service.complete_payment(payment.transaction_reference, verification.transaction_id, verification.amount)

        assert session.exec(select(Subscription)).all() == []


class TestPaymentAccess:
    """Failure and lookup."""

    def test_fail_completed_payment_is_rejected(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))
        payment_service.complete_payment(payment.transaction_reference, "flw-1", payment.total_amount)

        with pytest.raises(ConflictError):
            payment_service.fail_payment(payment.transaction_reference, "too late")

    def test_owner_and_admin_can_read(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        assert payment_service.get_payment_for_user(payment.transaction_reference, "client-1").id == payment.id
        assert payment_service.get_payment_for_user(payment.transaction_reference, "admin-1", is_admin=True)

        with pytest.raises(UnauthorizedActorError):
            payment_service.get_payment_for_user(payment.transaction_reference, "client-2")

    def test_status_view(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id, "monthly", 3))

        status_view = payment_service.get_payment_status(payment.transaction_reference)
        assert status_view["status"] == "pending"
        assert Decimal(status_view["breakdown"]["total_amount"]) == Decimal("13384.80")


class TestTimestamps:
    """Stored timestamps are naive UTC."""

    def test_utcnow_is_naive_utc(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            now = utcnow()

        assert now.tzinfo is None
        assert abs(now - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)

    def test_record_defaults_use_naive_utc(self, payment_service, gig):
        payment = payment_service.create_pending_payment("client-1", checkout_request(gig.id))

        assert payment.created_at.tzinfo is None
        assert payment.updated_at.tzinfo is None
