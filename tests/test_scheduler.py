"""
Tests for the billing scheduler and its Celery tasks.
"""

from datetime import timedelta

import pytest

from carepro.core.config import SubscriptionStatus
from carepro.core.exceptions import PersistenceConflictError
from carepro.core.monitoring.prometheus_metrics import billing_pass_items
from carepro.db.models import Subscription
from carepro.gateway.mock import MockGateway
from carepro.worker import tasks
from carepro.worker.scheduler import BillingScheduler


class FlakyGateway(MockGateway):
    """Gateway whose worker crashes when charging one particular card."""

    def charge_with_token(self, token, amount, currency, email, transaction_reference, narration=""):
        if token == "broken-token":
            raise RuntimeError("worker process died")
        return super().charge_with_token(token, amount, currency, email, transaction_reference, narration)


def _get_metric_value(metric, *labels):
    """Helper to get current metric value."""
    try:
        return metric.labels(*labels)._value.get()
    except (KeyError, AttributeError):
        return 0


@pytest.fixture
def scheduler(setup_test_database, gateway, clock):
    return BillingScheduler(engine=setup_test_database, gateway=gateway, clock=clock)


class TestBillingPass:
    """One pass over due work."""

    def test_nothing_due(self, scheduler, subscription_service, gig, helpers):
        helpers.create_subscription(subscription_service, gig)

        summary = scheduler.run_once()

        assert summary == {"reconcile": {}, "charge": {}, "finalize_cancellation": {}}

    def test_charges_due_subscriptions(self, scheduler, subscription_service, gig, gateway, clock,
                                       session, helpers):
        subscription = helpers.create_subscription(subscription_service, gig)
        clock.set(subscription.next_charge_date)
        before = _get_metric_value(billing_pass_items, "charge", "charged")

        summary = scheduler.run_once()

        assert summary["charge"] == {"charged": 1}
        assert len(gateway.charge_calls) == 1
        stored = helpers.reload(session, Subscription, subscription.id)
        assert stored.billing_cycles_completed == 2
        assert stored.status == SubscriptionStatus.ACTIVE
        assert _get_metric_value(billing_pass_items, "charge", "charged") == before + 1

        # Second pass in the same instant finds nothing left to charge
        assert scheduler.run_once()["charge"] == {}
        assert len(gateway.charge_calls) == 1

    def test_past_due_is_retried_after_backoff(self, scheduler, subscription_service, gig, gateway, clock,
                                               session, helpers):
        subscription = helpers.create_subscription(subscription_service, gig)
        gateway.queue_charge_outcome("Insufficient funds")
        clock.set(subscription.next_charge_date)

        assert scheduler.run_once()["charge"] == {"failed": 1}
        assert helpers.reload(session, Subscription, subscription.id).status == SubscriptionStatus.PAST_DUE

        clock.advance(minutes=30)
        assert scheduler.run_once()["charge"] == {}

        clock.advance(minutes=30)
        assert scheduler.run_once()["charge"] == {"charged": 1}
        assert helpers.reload(session, Subscription, subscription.id).failed_charge_attempts == 0

    def test_cancellation_is_finalized_once_at_period_end(self, scheduler, subscription_service, gig, clock,
                                                          session, helpers):
        subscription = helpers.create_subscription(subscription_service, gig)
        subscription_service.cancel_subscription(subscription.id, "client-1")

        clock.set(subscription.current_period_end - timedelta(seconds=1))
        assert scheduler.run_once()["finalize_cancellation"] == {}

        clock.set(subscription.current_period_end)
        assert scheduler.run_once()["finalize_cancellation"] == {"finalized": 1}
        assert scheduler.run_once()["finalize_cancellation"] == {}

        stored = helpers.reload(session, Subscription, subscription.id)
        assert stored.status == SubscriptionStatus.CANCELLED

    def test_one_failure_does_not_block_the_pass(self, setup_test_database, subscription_service, clock,
                                                 session, helpers):
        flaky = FlakyGateway()
        scheduler = BillingScheduler(engine=setup_test_database, gateway=flaky, clock=clock)
        gig = helpers.create_gig(session)
        broken = helpers.create_subscription(subscription_service, gig, client_id="client-1",
                                             payment_token="broken-token")
        healthy = helpers.create_subscription(subscription_service, gig, client_id="client-2")
        clock.set(healthy.next_charge_date)

        summary = scheduler.run_once()

        assert summary["charge"] == {"error": 1, "charged": 1}
        assert helpers.reload(session, Subscription, healthy.id).billing_cycles_completed == 2
        assert helpers.reload(session, Subscription, broken.id).status == SubscriptionStatus.CHARGING

        # The abandoned claim is settled once it times out
        clock.advance(minutes=16)
        summary = scheduler.run_once()

        assert summary["reconcile"] == {"failed": 1}
        assert summary["charge"] == {}
        stored = helpers.reload(session, Subscription, broken.id)
        assert stored.status == SubscriptionStatus.PAST_DUE
        assert stored.charge_reference is None

    def test_concurrent_writer_is_skipped(self, scheduler, subscription_service, gig, helpers):
        subscription = helpers.create_subscription(subscription_service, gig)

        def lose_race(service, subscription_id):
            raise PersistenceConflictError("Subscription", subscription_id)

        assert scheduler._run_each("charge", [subscription.id], lose_race) == {"skipped": 1}


class TestBillingTasks:
    """Celery task wiring."""

    def test_beat_schedule(self):
        schedule = tasks.celery_app.conf.beat_schedule["run-billing-cycle"]
        assert schedule["task"] == "carepro.worker.tasks.run_billing_cycle"
        assert schedule["schedule"] == 300.0

    def test_run_billing_cycle_runs_one_pass(self, monkeypatch):
        calls = []

        class RecordingScheduler:
            def run_once(self):
                calls.append("run_once")
                return {"reconcile": {}, "charge": {"charged": 2}, "finalize_cancellation": {}}

        monkeypatch.setattr(tasks, "BillingScheduler", RecordingScheduler)

        summary = tasks.run_billing_cycle()

        assert calls == ["run_once"]
        assert summary["charge"] == {"charged": 2}
