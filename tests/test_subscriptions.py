"""
Tests for the subscription engine.

Tests cover:
- Subscription creation and the single-live-subscription rule
- Cancel, reactivate, terminate with pro-rated refunds, pause and resume
- Plan changes
- Recurring charges, retry backoff, suspension and timeout recovery
- Stale charge claims
- Payment method refresh
- Client summaries and admin analytics
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from carepro.core.config import ChargeStatus, NotificationType, SubscriptionStatus
from carepro.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    UnauthorizedActorError,
    ValidationError,
)
from carepro.db.models import BillingRecord, ClientOrder, Contract, Subscription, SubscriptionCreate
from carepro.gateway.base import ChargeResult, PaymentLinkRequest


@pytest.fixture
def subscription(subscription_service, gig, helpers):
    """Monthly plan, two visits a week: 8923.20 per period."""
    return helpers.create_subscription(subscription_service, gig)


class TestCreateSubscription:
    """Creating subscriptions from settled purchases."""

    def test_create_subscription(self, subscription, clock, session, helpers):
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.recurring_amount == Decimal("8923.20")
        assert subscription.billing_cycles_completed == 1
        assert subscription.current_period_start == clock()
        assert subscription.current_period_end == clock() + timedelta(days=30)
        assert subscription.next_charge_date == subscription.current_period_end
        assert subscription.failed_charge_attempts == 0

        history = subscription.get_payment_history()
        assert len(history) == 1
        assert history[0].status == ChargeStatus.SUCCESSFUL
        assert history[0].billing_cycle_number == 1

        notifications = helpers.notifications(session, NotificationType.SUBSCRIPTION_CREATED.value)
        assert {n.recipient_id for n in notifications} == {"client-1", "caregiver-1"}

    def test_every_invalid_field_is_reported(self, subscription_service):
        request = SubscriptionCreate(
            client_id="",
            caregiver_id="caregiver-1",
            gig_id="gig-1",
            original_order_id="order-1",
            billing_cycle="daily",
            frequency_per_week=0,
            price_per_visit=Decimal("0"),
        )

        with pytest.raises(ValidationError) as exc_info:
            subscription_service.create_subscription(request)

        assert len(exc_info.value.errors) == 4

    def test_one_live_subscription_per_client_and_gig(self, subscription, subscription_service, gig, helpers):
        with pytest.raises(ConflictError):
            helpers.create_subscription(subscription_service, gig, order_id="order-2")

    def test_other_client_can_subscribe_to_same_gig(self, subscription, subscription_service, gig, helpers):
        other = helpers.create_subscription(subscription_service, gig, client_id="client-2")
        assert other.status == SubscriptionStatus.ACTIVE

    def test_pending_cancellation_does_not_block_new_subscription(self, subscription, subscription_service,
                                                                   gig, helpers):
        subscription_service.cancel_subscription(subscription.id, "client-1")

        replacement = helpers.create_subscription(subscription_service, gig, order_id="order-2")
        assert replacement.status == SubscriptionStatus.ACTIVE

    def test_without_card_token_nothing_is_scheduled(self, subscription_service, gig, helpers):
        subscription = helpers.create_subscription(subscription_service, gig, payment_token=None)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.next_charge_date is None


class TestCancelAndReactivate:
    """Cancellation at period end."""

    def test_cancel(self, subscription, subscription_service):
        cancelled = subscription_service.cancel_subscription(subscription.id, "client-1", "Moving away")

        assert cancelled.status == SubscriptionStatus.PENDING_CANCELLATION
        assert cancelled.cancel_at_period_end is True
        assert cancelled.auto_renew is False
        assert cancelled.next_charge_date is None
        assert cancelled.cancellation_reason == "Moving away"
        assert cancelled.cancelled_by == "client"
        assert cancelled.is_service_active(subscription.current_period_end - timedelta(days=1))

    def test_only_client_can_cancel(self, subscription, subscription_service):
        with pytest.raises(UnauthorizedActorError):
            subscription_service.cancel_subscription(subscription.id, "caregiver-1")

    def test_cancel_twice_is_rejected(self, subscription, subscription_service):
        subscription_service.cancel_subscription(subscription.id, "client-1")

        with pytest.raises(ConflictError):
            subscription_service.cancel_subscription(subscription.id, "client-1")

    def test_reactivate_restores_renewal(self, subscription, subscription_service, clock):
        subscription_service.cancel_subscription(subscription.id, "client-1")
        clock.advance(days=5)

        reactivated = subscription_service.reactivate_subscription(subscription.id, "client-1")

        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.auto_renew is True
        assert reactivated.cancel_at_period_end is False
        assert reactivated.cancelled_by is None
        assert reactivated.next_charge_date == reactivated.current_period_end

    def test_reactivate_after_period_end_is_rejected(self, subscription, subscription_service, clock):
        subscription_service.cancel_subscription(subscription.id, "client-1")
        clock.set(subscription.current_period_end)

        with pytest.raises(ConflictError):
            subscription_service.reactivate_subscription(subscription.id, "client-1")

    def test_finalize_cancellation_waits_for_period_end(self, subscription, subscription_service, clock, helpers):
        subscription_service.cancel_subscription(subscription.id, "client-1")

        with pytest.raises(ConflictError):
            subscription_service.finalize_cancellation(subscription.id)

        clock.set(subscription.current_period_end)
        finalized = subscription_service.finalize_cancellation(subscription.id)

        assert finalized.status == SubscriptionStatus.CANCELLED
        assert finalized.terminated_at == clock()
        assert not finalized.is_service_active(clock())


class TestTerminate:
    """Immediate termination and refunds."""

    def test_terminate_computes_pro_rated_refund(self, subscription, subscription_service, clock, session, helpers):
        clock.advance(days=10)

        terminated = subscription_service.terminate_subscription(subscription.id, "client-1", "Not needed")

        assert terminated.status == SubscriptionStatus.TERMINATED
        assert terminated.refund_amount == Decimal("5948.80")
        assert terminated.refund_status == "pending_review"
        assert terminated.cancelled_by == "client"
        assert terminated.next_charge_date is None
        assert terminated.terminated_at == clock()

        reviews = helpers.notifications(session, NotificationType.REFUND_REVIEW.value)
        assert {n.recipient_id for n in reviews} == {"admin-1", "admin-2"}
        assert all(n.recipient_role == "admins" for n in reviews)

    def test_terminate_without_refund(self, subscription, subscription_service, session, helpers):
        terminated = subscription_service.terminate_subscription(
            subscription.id, "client-1", "Not needed", issue_refund=False
        )

        assert terminated.refund_amount is None
        assert terminated.refund_status == "none"
        assert helpers.notifications(session, NotificationType.REFUND_REVIEW.value) == []

    def test_no_refund_at_period_end(self, subscription, subscription_service, clock):
        clock.set(subscription.current_period_end)

        terminated = subscription_service.terminate_subscription(subscription.id, "client-1", "Done")

        assert terminated.refund_amount == Decimal("0")
        assert terminated.refund_status == "none"

    def test_caregiver_and_admin_can_terminate(self, subscription_service, session, helpers):
        gig_a = helpers.create_gig(session)
        gig_b = helpers.create_gig(session)
        first = helpers.create_subscription(subscription_service, gig_a)
        second = helpers.create_subscription(subscription_service, gig_b)

        by_caregiver = subscription_service.terminate_subscription(first.id, "caregiver-1", "Unavailable")
        by_admin = subscription_service.terminate_subscription(second.id, "admin-9", "Policy", is_admin=True)

        assert by_caregiver.cancelled_by == "caregiver"
        assert by_admin.cancelled_by == "admin"

    def test_stranger_cannot_terminate(self, subscription, subscription_service):
        with pytest.raises(UnauthorizedActorError):
            subscription_service.terminate_subscription(subscription.id, "someone-else", "Nope")

    def test_terminate_twice_is_rejected(self, subscription, subscription_service):
        subscription_service.terminate_subscription(subscription.id, "client-1", "Done")

        with pytest.raises(ConflictError):
            subscription_service.terminate_subscription(subscription.id, "client-1", "Again")

    def test_terminate_ends_linked_contract(self, subscription, subscription_service, session):
        contract = Contract(client_id="client-1", caregiver_id="caregiver-1", gig_id=subscription.gig_id)
        session.add(contract)
        session.commit()
        subscription_service.link_contract(subscription.id, contract.id)

        subscription_service.terminate_subscription(subscription.id, "client-1", "Care ended")

        session.refresh(contract)
        assert contract.status == "terminated"
        assert contract.termination_reason == "Care ended"

    def test_link_unknown_contract(self, subscription, subscription_service):
        with pytest.raises(NotFoundError):
            subscription_service.link_contract(subscription.id, "missing-contract")


class TestPauseAndResume:
    """Pausing stops billing; resuming starts a fresh period."""

    def test_pause_and_resume(self, subscription, subscription_service, clock):
        paused = subscription_service.pause_subscription(subscription.id, "client-1", "Travelling")
        assert paused.status == SubscriptionStatus.PAUSED
        assert paused.next_charge_date is None

        clock.advance(days=12)
        resumed = subscription_service.resume_subscription(subscription.id, "client-1")

        assert resumed.status == SubscriptionStatus.ACTIVE
        assert resumed.current_period_start == clock()
        assert resumed.current_period_end == clock() + timedelta(days=30)
        assert resumed.next_charge_date == resumed.current_period_end

    def test_resume_active_is_rejected(self, subscription, subscription_service):
        with pytest.raises(ConflictError):
            subscription_service.resume_subscription(subscription.id, "client-1")

    def test_paused_subscription_is_not_due(self, subscription, subscription_service, clock):
        subscription_service.pause_subscription(subscription.id, "client-1")
        clock.advance(days=45)

        assert subscription_service.get_due_subscription_ids() == []


class TestChangePlan:
    """Plan changes apply from the next charge."""

    def test_downgrade_to_weekly(self, subscription, subscription_service):
        original_next = subscription.next_charge_date

        updated, change = subscription_service.change_plan(subscription.id, "client-1", "weekly", 3, "Budget")

        assert change.change_type == "downgrade"
        assert change.previous_amount == Decimal("8923.20")
        assert change.new_amount == Decimal("3346.20")
        assert change.effective_date == subscription.current_period_end
        assert updated.recurring_amount == Decimal("3346.20")
        assert updated.billing_cycle == "weekly"
        assert updated.next_charge_date == original_next

    def test_upgrade_frequency(self, subscription, subscription_service):
        updated, change = subscription_service.change_plan(subscription.id, "client-1", "monthly", 4)

        assert change.change_type == "upgrade"
        assert updated.recurring_amount == Decimal("17846.40")

    def test_same_plan_is_rejected(self, subscription, subscription_service):
        with pytest.raises(ValidationError):
            subscription_service.change_plan(subscription.id, "client-1", "monthly", 2)

    def test_invalid_plan_is_rejected(self, subscription, subscription_service):
        with pytest.raises(ValidationError) as exc_info:
            subscription_service.change_plan(subscription.id, "client-1", "yearly", 8)

        assert len(exc_info.value.errors) == 2

    def test_plan_history_newest_first(self, subscription, subscription_service, clock):
        subscription_service.change_plan(subscription.id, "client-1", "monthly", 3)
        clock.advance(hours=1)
        updated, _ = subscription_service.change_plan(subscription.id, "client-1", "monthly", 1)

        history = subscription_service.get_plan_history(updated)
        assert [h.new_frequency_per_week for h in history] == [1, 3]


class TestRecurringCharges:
    """Charging due subscriptions."""

    def test_successful_charge_renews_period(self, subscription, subscription_service, gateway, clock, session):
        clock.set(subscription.next_charge_date)

        renewed = subscription_service.process_recurring_charge(subscription.id)

        assert renewed.status == SubscriptionStatus.ACTIVE
        assert renewed.billing_cycles_completed == 2
        assert renewed.current_period_start == clock()
        assert renewed.current_period_end == clock() + timedelta(days=30)
        assert renewed.next_charge_date == renewed.current_period_end
        assert renewed.charge_reference is None

        assert len(gateway.charge_calls) == 1
        call = gateway.charge_calls[0]
        assert call["amount"] == Decimal("8923.20")
        assert call["token"] == "tok-card-1"
        assert call["transaction_reference"].startswith("CAREPRO-RECURRING-")

        latest = subscription_service.get_payment_history(renewed)[0]
        assert latest.status == ChargeStatus.SUCCESSFUL
        assert latest.billing_cycle_number == 2

        order = session.get(ClientOrder, latest.client_order_id)
        assert order.subscription_id == renewed.id

        record = session.exec(select(BillingRecord).where(BillingRecord.subscription_id == renewed.id)).one()
        assert record.billing_cycle_number == 2
        assert record.amount_paid == Decimal("8923.20")

    def test_not_due_is_rejected(self, subscription, subscription_service, gateway):
        with pytest.raises(ConflictError):
            subscription_service.process_recurring_charge(subscription.id)

        assert gateway.charge_calls == []

    def test_retry_backoff_then_suspension(self, subscription, subscription_service, gateway, clock,
                                           session, helpers):
        for _ in range(3):
            gateway.queue_charge_outcome("Insufficient funds")

        clock.set(subscription.next_charge_date)
        first = subscription_service.process_recurring_charge(subscription.id)
        assert first.status == SubscriptionStatus.PAST_DUE
        assert first.failed_charge_attempts == 1
        assert first.next_charge_date == clock() + timedelta(hours=1)
        assert first.last_charge_error == "Insufficient funds"

        clock.advance(hours=1)
        second = subscription_service.process_recurring_charge(subscription.id)
        assert second.failed_charge_attempts == 2
        assert second.next_charge_date == clock() + timedelta(hours=4)

        clock.advance(hours=4)
        third = subscription_service.process_recurring_charge(subscription.id)
        assert third.status == SubscriptionStatus.SUSPENDED
        assert third.next_charge_date is None

        suspended = helpers.notifications(session, NotificationType.SUBSCRIPTION_SUSPENDED.value)
        assert {n.recipient_id for n in suspended} == {"client-1", "caregiver-1"}

        with pytest.raises(ConflictError):
            subscription_service.process_recurring_charge(subscription.id)
        assert len(gateway.charge_calls) == 3

    def test_retry_success_clears_failures(self, subscription, subscription_service, gateway, clock):
        gateway.queue_charge_outcome("Do not honor")
        clock.set(subscription.next_charge_date)
        subscription_service.process_recurring_charge(subscription.id)

        clock.advance(hours=1)
        recovered = subscription_service.process_recurring_charge(subscription.id)

        assert recovered.status == SubscriptionStatus.ACTIVE
        assert recovered.failed_charge_attempts == 0
        assert recovered.last_charge_error is None
        assert recovered.billing_cycles_completed == 2
        assert recovered.current_period_start == clock()
        assert recovered.current_period_end == clock() + timedelta(days=30)
        assert recovered.next_charge_date == recovered.current_period_end

    def test_gateway_error_counts_as_failure(self, subscription, subscription_service, gateway, clock):
        gateway.queue_charge_outcome(GatewayError("connection reset", retryable=True))
        clock.set(subscription.next_charge_date)

        failed = subscription_service.process_recurring_charge(subscription.id)

        assert failed.status == SubscriptionStatus.PAST_DUE
        assert failed.unresolved_charge_reference is None
        assert "connection reset" in failed.last_charge_error

    def test_timed_out_charge_is_not_charged_twice(self, subscription, subscription_service, gateway, clock):
        gateway.queue_charge_outcome(("timeout", True))
        clock.set(subscription.next_charge_date)

        timed_out = subscription_service.process_recurring_charge(subscription.id)
        assert timed_out.status == SubscriptionStatus.PAST_DUE
        reference = timed_out.unresolved_charge_reference
        assert reference is not None

        clock.advance(hours=1)
        recovered = subscription_service.process_recurring_charge(subscription.id)

        assert recovered.status == SubscriptionStatus.ACTIVE
        assert recovered.unresolved_charge_reference is None
        assert recovered.billing_cycles_completed == 2
        assert len(gateway.charge_calls) == 1

        latest = subscription_service.get_payment_history(recovered)[0]
        assert latest.transaction_reference == reference
        assert latest.status == ChargeStatus.SUCCESSFUL

    def test_lapsed_subscription_restarts_from_now(self, subscription, subscription_service, clock):
        clock.set(subscription.current_period_end + timedelta(days=31))

        renewed = subscription_service.process_recurring_charge(subscription.id)

        assert renewed.current_period_start == clock()
        assert renewed.current_period_end == clock() + timedelta(days=30)

    def test_record_charge_failure(self, subscription, subscription_service, clock):
        failed = subscription_service.record_charge_failure(subscription.id, "Card expired")

        assert failed.status == SubscriptionStatus.PAST_DUE
        assert failed.failed_charge_attempts == 1
        assert failed.next_charge_date == clock() + timedelta(hours=1)

    def test_due_query(self, subscription, subscription_service, clock, gig, helpers):
        helpers.create_subscription(subscription_service, gig, client_id="client-2", billing_cycle="weekly",
                                    frequency_per_week=1)

        clock.advance(days=7)
        assert len(subscription_service.get_due_subscription_ids()) == 1

        clock.advance(days=23)
        assert len(subscription_service.get_due_subscription_ids()) == 2


class TestStaleChargeClaims:
    """Claims left behind by a worker that died mid-charge."""

    def _crash_mid_charge(self, subscription, subscription_service, gateway, clock):
        gateway.queue_charge_outcome(RuntimeError("worker killed"))
        clock.set(subscription.next_charge_date)
        with pytest.raises(RuntimeError):
            subscription_service.process_recurring_charge(subscription.id)
        return subscription_service.get_subscription(subscription.id)

    def test_claim_stays_charging(self, subscription, subscription_service, gateway, clock):
        claimed = self._crash_mid_charge(subscription, subscription_service, gateway, clock)

        assert claimed.status == SubscriptionStatus.CHARGING
        assert claimed.charge_reference is not None
        assert claimed.charge_started_at == clock()

        with pytest.raises(ConflictError):
            subscription_service.terminate_subscription(subscription.id, "client-1", "Now")

    def test_reconcile_waits_for_timeout(self, subscription, subscription_service, gateway, clock):
        self._crash_mid_charge(subscription, subscription_service, gateway, clock)

        assert subscription_service.get_stale_charge_ids() == []
        with pytest.raises(ConflictError):
            subscription_service.reconcile_stale_charge(subscription.id)

    def test_unconfirmed_claim_counts_as_failure(self, subscription, subscription_service, gateway, clock):
        self._crash_mid_charge(subscription, subscription_service, gateway, clock)
        clock.advance(minutes=16)

        assert subscription_service.get_stale_charge_ids() == [subscription.id]
        reconciled = subscription_service.reconcile_stale_charge(subscription.id)

        assert reconciled.status == SubscriptionStatus.PAST_DUE
        assert reconciled.failed_charge_attempts == 1
        assert reconciled.charge_reference is None
        latest = subscription_service.get_payment_history(reconciled)[0]
        assert latest.status == ChargeStatus.FAILED

    def test_confirmed_claim_is_applied(self, subscription, subscription_service, gateway, clock):
        claimed = self._crash_mid_charge(subscription, subscription_service, gateway, clock)
        gateway.charges[claimed.charge_reference] = ChargeResult(
            success=True,
            transaction_reference=claimed.charge_reference,
            transaction_id="flw-late-1",
            status="successful",
            amount=Decimal("8923.20"),
        )
        clock.advance(minutes=16)

        reconciled = subscription_service.reconcile_stale_charge(subscription.id)

        assert reconciled.status == SubscriptionStatus.ACTIVE
        assert reconciled.billing_cycles_completed == 2
        latest = subscription_service.get_payment_history(reconciled)[0]
        assert latest.gateway_transaction_id == "flw-late-1"


class TestPaymentMethodUpdate:
    """Card refresh through a verification checkout."""

    def _suspend(self, subscription, subscription_service, gateway, clock):
        for _ in range(3):
            gateway.queue_charge_outcome("Expired card")
        clock.set(subscription.next_charge_date)
        for hours in (0, 1, 4):
            clock.advance(hours=hours)
            subscription_service.process_recurring_charge(subscription.id)

    def test_new_card_reactivates_suspended_subscription(self, subscription, subscription_service, gateway, clock):
        self._suspend(subscription, subscription_service, gateway, clock)

        started = subscription_service.initiate_payment_method_update(
            subscription.id, "client-1", redirect_url="https://app.carepro.test/cards"
        )
        assert started["transaction_reference"].startswith("CAREPRO-CARDUPDATE-")
        assert gateway.checkouts[started["transaction_reference"]].amount == Decimal("50")

        verification = gateway.settle_checkout(started["transaction_reference"], token="tok-card-2")
        updated = subscription_service.complete_payment_method_update(
            subscription.id, "client-1", verification.transaction_id
        )

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.payment_token == "tok-card-2"
        assert updated.failed_charge_attempts == 0
        assert updated.next_charge_date == clock()
        assert updated.pending_method_reference is None
        assert subscription_service.get_due_subscription_ids() == [subscription.id]

    def test_unrelated_transaction_is_rejected(self, subscription, subscription_service, gateway):
        subscription_service.initiate_payment_method_update(subscription.id, "client-1")
        gateway.initiate_payment(PaymentLinkRequest(
            transaction_reference="CAREPRO-CARDUPDATE-20250115-OTHER001",
            amount=Decimal("50"),
            currency="NGN",
            email="client-1@example.com",
        ))
        verification = gateway.settle_checkout("CAREPRO-CARDUPDATE-20250115-OTHER001")

        with pytest.raises(ConflictError):
            subscription_service.complete_payment_method_update(
                subscription.id, "client-1", verification.transaction_id
            )

    def test_first_card_schedules_next_charge(self, subscription_service, gateway, gig, helpers):
        tokenless = helpers.create_subscription(subscription_service, gig, payment_token=None)
        started = subscription_service.initiate_payment_method_update(tokenless.id, "client-1")
        verification = gateway.settle_checkout(started["transaction_reference"], token="tok-card-3")

        updated = subscription_service.complete_payment_method_update(
            tokenless.id, "client-1", verification.transaction_id
        )

        assert updated.payment_token == "tok-card-3"
        assert updated.next_charge_date == tokenless.current_period_end

    def test_verification_without_card_is_rejected(self, subscription, subscription_service, gateway):
        started = subscription_service.initiate_payment_method_update(subscription.id, "client-1")
        verification = gateway.settle_checkout(started["transaction_reference"], token=None)

        with pytest.raises(ConflictError):
            subscription_service.complete_payment_method_update(
                subscription.id, "client-1", verification.transaction_id
            )

        assert subscription_service.get_subscription(subscription.id).payment_token == "tok-card-1"

    def test_active_card_update_keeps_schedule(self, subscription, subscription_service, gateway):
        started = subscription_service.initiate_payment_method_update(subscription.id, "client-1")
        verification = gateway.settle_checkout(started["transaction_reference"])

        updated = subscription_service.complete_payment_method_update(
            subscription.id, "client-1", verification.transaction_id
        )

        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.next_charge_date == subscription.current_period_end


class TestSummaries:
    """Client summary and admin analytics."""

    def test_client_summary(self, subscription_service, session, helpers):
        monthly_gig = helpers.create_gig(session)
        weekly_gig = helpers.create_gig(session)
        ended_gig = helpers.create_gig(session)
        helpers.create_subscription(subscription_service, monthly_gig)
        weekly = helpers.create_subscription(subscription_service, weekly_gig, billing_cycle="weekly",
                                             frequency_per_week=1)
        ended = helpers.create_subscription(subscription_service, ended_gig)
        subscription_service.terminate_subscription(ended.id, "client-1", "Done", issue_refund=False)

        summary = subscription_service.get_client_summary("client-1")

        assert summary["active_subscriptions"] == 2
        assert summary["total_subscriptions"] == 3
        assert Decimal(summary["monthly_spend"]) == Decimal("13752.88")
        assert summary["next_payment_date"] == weekly.next_charge_date.isoformat()
        assert Decimal(summary["next_payment_amount"]) == Decimal("1115.40")

    def test_analytics(self, subscription_service, gig, helpers):
        helpers.create_subscription(subscription_service, gig, client_id="client-1")
        helpers.create_subscription(subscription_service, gig, client_id="client-2", billing_cycle="weekly",
                                    frequency_per_week=1)
        leaving = helpers.create_subscription(subscription_service, gig, client_id="client-3")
        subscription_service.cancel_subscription(leaving.id, "client-3")

        analytics = subscription_service.get_analytics()

        assert analytics["total_active"] == 2
        assert analytics["total_pending_cancellation"] == 1
        assert Decimal(analytics["monthly_recurring_revenue"]) == Decimal("13752.88")
        assert analytics["new_this_month"] == 3
        assert analytics["cancellations_this_month"] == 1
        assert analytics["churn_rate"] == 50.0

    def test_admin_listing_filters_by_status(self, subscription, subscription_service):
        subscription_service.pause_subscription(subscription.id, "client-1")

        assert [s.id for s in subscription_service.list_all(status="paused")] == [subscription.id]
        assert subscription_service.list_all(status="active") == []
        with pytest.raises(ValidationError):
            subscription_service.list_all(status="sleeping")

    def test_lookup_by_order_and_access(self, subscription, subscription_service):
        assert subscription_service.get_by_order(subscription.original_order_id).id == subscription.id
        assert subscription_service.get_subscription_for_user(subscription.id, "caregiver-1")

        with pytest.raises(UnauthorizedActorError):
            subscription_service.get_subscription_for_user(subscription.id, "client-2")
        with pytest.raises(NotFoundError):
            subscription_service.get_by_order("no-such-order")

    def test_stored_subscription_matches_returned(self, subscription, session, helpers):
        stored = helpers.reload(session, Subscription, subscription.id)
        assert stored.version == subscription.version
        assert stored.recurring_amount == subscription.recurring_amount
