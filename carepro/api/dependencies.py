"""
Shared FastAPI dependencies for the billing routers.
"""
from datetime import datetime
from typing import Callable
from fastapi import Depends
from sqlmodel import Session

from carepro.api.services.payments import PaymentService
from carepro.api.services.subscriptions import SubscriptionService
from carepro.core.config import utcnow
from carepro.db.session import get_session
from carepro.gateway import get_gateway
from carepro.gateway.base import PaymentGateway


def get_payment_gateway() -> PaymentGateway:
    """Gateway used by request handlers; overridden in tests."""
    return get_gateway()


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_payment_service(
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PaymentService:
    return PaymentService(session=session, gateway=gateway, clock=clock)


def get_subscription_service(
    session: Session = Depends(get_session),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SubscriptionService:
    return SubscriptionService(session=session, gateway=gateway, clock=clock)
