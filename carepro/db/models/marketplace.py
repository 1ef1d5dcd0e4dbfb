"""
Marketplace records the billing core reads or writes through its collaborators.

Only the fields billing needs are modelled here; the full gig, order and
contract schemas belong to the marketplace service.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlmodel import SQLModel, Field
import uuid

from carepro.core.config import utcnow


class Gig(SQLModel, table=True):
    """A caregiver's published service offering."""
    __tablename__ = "gigs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    caregiver_id: str = Field(index=True)
    title: str = Field(default="")
    price: Decimal = Field(max_digits=14, decimal_places=2, description="Price per visit")
    status: str = Field(default="active", description="draft, active, published, paused, archived")
    created_at: datetime = Field(default_factory=utcnow)


class ClientOrder(SQLModel, table=True):
    """Order created once a payment is settled."""
    __tablename__ = "client_orders"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    client_id: str = Field(index=True)
    gig_id: str = Field(index=True)
    caregiver_id: Optional[str] = Field(default=None, index=True)
    payment_option: str = Field(description="one-time, weekly or monthly")
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    transaction_id: str = Field(index=True, description="Gateway transaction id that paid for the order")
    subscription_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Contract(SQLModel, table=True):
    """Care contract that may be tied to a subscription."""
    __tablename__ = "contracts"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    client_id: str = Field(index=True)
    caregiver_id: str = Field(index=True)
    gig_id: Optional[str] = Field(default=None)
    status: str = Field(default="active", description="active, completed, terminated")
    terminated_at: Optional[datetime] = Field(default=None)
    termination_reason: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
