"""
Billing ledger export and notification records.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlmodel import SQLModel, Field
import uuid

from carepro.core.config import utcnow


class BillingRecord(SQLModel, table=True):
    """
    One settled charge, exported for accounting.

    Written best effort after a payment or recurring charge succeeds; a
    failure here never undoes the charge.
    """
    __tablename__ = "billing_records"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    order_id: Optional[str] = Field(default=None, index=True)
    subscription_id: Optional[str] = Field(default=None, index=True)
    contract_id: Optional[str] = Field(default=None)
    caregiver_id: Optional[str] = Field(default=None, index=True)
    client_id: str = Field(index=True)
    gig_id: str

    billing_cycle_number: int = Field(default=1)
    service_type: str
    frequency_per_week: int = Field(default=1)
    period_start: Optional[datetime] = Field(default=None)
    period_end: Optional[datetime] = Field(default=None)
    next_charge_date: Optional[datetime] = Field(default=None)

    amount_paid: Decimal = Field(max_digits=14, decimal_places=2)
    order_fee: Decimal = Field(max_digits=14, decimal_places=2)
    service_charge: Decimal = Field(max_digits=14, decimal_places=2)
    gateway_fees: Decimal = Field(max_digits=14, decimal_places=2)
    currency: str = Field(default="NGN")

    payment_transaction_id: Optional[str] = Field(default=None, index=True)
    status: str = Field(default="paid")
    created_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    """Notification handed to the delivery service."""
    __tablename__ = "notifications"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    recipient_id: str = Field(index=True)
    recipient_role: str
    notification_type: str = Field(index=True)
    title: str
    content: str
    related_entity_id: Optional[str] = Field(default=None, index=True)
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
