"""
Subscriptions router: client, caregiver and admin subscription management.
"""
from typing import Optional
from fastapi import APIRouter, Depends
import structlog

from carepro.api.dependencies import get_subscription_service
from carepro.api.services.subscriptions import SubscriptionService
from carepro.core.security import AuthenticatedUser, get_current_user, require_admin
from carepro.db.models.subscription import (
    CancelRequest,
    ContractLinkRequest,
    PauseRequest,
    PaymentMethodConfirmRequest,
    PaymentMethodUpdateRequest,
    PlanChangeRequest,
    TerminateRequest,
)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = structlog.get_logger(__name__)


# Collection routes are declared before "/{subscription_id}" so they match first

@router.get("/client")
def list_client_subscriptions(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [s.to_dict() for s in service.list_for_client(current_user.id)]


@router.get("/client/summary")
def get_client_summary(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Live subscriptions, monthly spend and next payment for the caller."""
    return service.get_client_summary(current_user.id)


@router.get("/caregiver")
def list_caregiver_subscriptions(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [s.to_dict() for s in service.list_for_caregiver(current_user.id)]


@router.get("/by-order/{order_id}")
def get_subscription_by_order(
    order_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_by_order(order_id)
    subscription = service.get_subscription_for_user(subscription.id, current_user.id, current_user.is_admin)
    return subscription.to_dict()


@router.get("/admin/analytics")
def get_subscription_analytics(
    admin: AuthenticatedUser = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.get_analytics()


@router.get("/admin/all")
def list_all_subscriptions(
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [s.to_dict() for s in service.list_all(status=status, limit=min(limit, 500), offset=offset)]


@router.post("/admin/{subscription_id}/terminate")
def admin_terminate_subscription(
    subscription_id: str,
    request: TerminateRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Terminate any subscription as an administrator."""
    subscription = service.terminate_subscription(
        subscription_id,
        admin.id,
        request.reason,
        issue_refund=request.issue_refund,
        is_admin=True,
    )
    return subscription.to_dict()


@router.post("/admin/{subscription_id}/contract")
def link_subscription_contract(
    subscription_id: str,
    request: ContractLinkRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.link_contract(subscription_id, request.contract_id).to_dict()


@router.get("/{subscription_id}")
def get_subscription(
    subscription_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Subscription details; visible to its client, its caregiver or an admin."""
    return service.get_subscription_for_user(subscription_id, current_user.id, current_user.is_admin).to_dict()


@router.post("/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    request: CancelRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel at the end of the current billing period."""
    return service.cancel_subscription(subscription_id, current_user.id, request.reason).to_dict()


@router.post("/{subscription_id}/reactivate")
def reactivate_subscription(
    subscription_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.reactivate_subscription(subscription_id, current_user.id).to_dict()


@router.post("/{subscription_id}/terminate")
def terminate_subscription(
    subscription_id: str,
    request: TerminateRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """End the subscription immediately, computing any pro-rated refund."""
    subscription = service.terminate_subscription(
        subscription_id,
        current_user.id,
        request.reason,
        issue_refund=request.issue_refund,
        is_admin=current_user.is_admin,
    )
    return subscription.to_dict()


@router.post("/{subscription_id}/pause")
def pause_subscription(
    subscription_id: str,
    request: PauseRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.pause_subscription(subscription_id, current_user.id, request.reason).to_dict()


@router.post("/{subscription_id}/resume")
def resume_subscription(
    subscription_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.resume_subscription(subscription_id, current_user.id).to_dict()


@router.put("/{subscription_id}/plan")
def change_subscription_plan(
    subscription_id: str,
    request: PlanChangeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Change billing cycle and/or visit frequency; the new amount applies from the next charge."""
    subscription, change = service.change_plan(
        subscription_id,
        current_user.id,
        request.billing_cycle,
        request.frequency_per_week,
        request.reason,
    )
    return {
        "subscription": subscription.to_dict(),
        "plan_change": change.model_dump(mode="json"),
    }


@router.get("/{subscription_id}/plan-history")
def get_plan_history(
    subscription_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_subscription_for_user(subscription_id, current_user.id, current_user.is_admin)
    return [record.model_dump(mode="json") for record in service.get_plan_history(subscription)]


@router.post("/{subscription_id}/payment-method")
def initiate_payment_method_update(
    subscription_id: str,
    request: PaymentMethodUpdateRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Start a card verification checkout for a new payment method."""
    return service.initiate_payment_method_update(
        subscription_id,
        current_user.id,
        redirect_url=request.redirect_url,
        email=request.email,
    )


@router.post("/{subscription_id}/payment-method/confirm")
def confirm_payment_method_update(
    subscription_id: str,
    request: PaymentMethodConfirmRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.complete_payment_method_update(subscription_id, current_user.id, request.transaction_id)
    return subscription.to_dict()


@router.get("/{subscription_id}/payments")
def get_payment_history(
    subscription_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = service.get_subscription_for_user(subscription_id, current_user.id, current_user.is_admin)
    return [record.model_dump(mode="json") for record in service.get_payment_history(subscription)]
