"""
One-time payment ledger model.

A PendingPayment is created when a client starts checkout for a gig and is
settled exactly once, either into an order or into a terminal failure.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy import Integer, String
from sqlmodel import SQLModel, Field, Column
import uuid

from carepro.core.config import PaymentStatus, utcnow


_payment_version = Column("version", Integer, nullable=False)


class PendingPayment(SQLModel, table=True):
    """
    Checkout record awaiting confirmation from the payment gateway.

    The fee breakdown is computed once at creation and never recomputed.
    Writes are versioned so two completions of the same reference cannot
    both succeed.
    """
    __tablename__ = "pending_payments"
    __mapper_args__ = {"version_id_col": _payment_version}

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique payment identifier"
    )

    transaction_reference: str = Field(
        unique=True,
        index=True,
        description="Merchant reference sent to the gateway (CAREPRO-YYYYMMDD-XXXXXXXX)"
    )

    gig_id: str = Field(index=True, description="Gig being purchased")
    client_id: str = Field(index=True, description="Paying client")
    email: str = Field(description="Payer email passed to the gateway")

    service_type: str = Field(description="one-time or monthly")
    frequency_per_week: int = Field(default=1, description="Visits per week")

    base_price: Decimal = Field(max_digits=14, decimal_places=2, description="Gig price per visit")
    order_fee: Decimal = Field(max_digits=14, decimal_places=2)
    service_charge: Decimal = Field(max_digits=14, decimal_places=2)
    gateway_fee: Decimal = Field(max_digits=14, decimal_places=2)
    total_amount: Decimal = Field(
        max_digits=14,
        decimal_places=2,
        description="order_fee + service_charge + gateway_fee; the amount the client must pay"
    )
    currency: str = Field(default="NGN")

    redirect_url: Optional[str] = Field(default=None)
    payment_link: Optional[str] = Field(default=None, description="Hosted checkout link from the gateway")

    status: str = Field(
        default=PaymentStatus.PENDING.value,
        sa_column=Column(String, index=True, nullable=False),
        description="pending, processing, completed, failed, amount_mismatch"
    )

    gateway_transaction_id: Optional[str] = Field(default=None, index=True)
    client_order_id: Optional[str] = Field(default=None, description="Order created on completion")
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    version: Optional[int] = Field(default=None, sa_column=_payment_version)

    def is_terminal(self) -> bool:
        return self.status in (
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.AMOUNT_MISMATCH,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_reference": self.transaction_reference,
            "gig_id": self.gig_id,
            "client_id": self.client_id,
            "service_type": self.service_type,
            "frequency_per_week": self.frequency_per_week,
            "breakdown": {
                "base_price": str(self.base_price),
                "order_fee": str(self.order_fee),
                "service_charge": str(self.service_charge),
                "gateway_fee": str(self.gateway_fee),
                "total_amount": str(self.total_amount),
                "currency": self.currency,
            },
            "status": self.status,
            "payment_link": self.payment_link,
            "gateway_transaction_id": self.gateway_transaction_id,
            "client_order_id": self.client_order_id,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class PaymentInitiate(SQLModel):
    """Checkout request for a gig purchase."""
    gig_id: str
    service_type: str = Field(description="one-time or monthly")
    frequency_per_week: int = Field(default=1)
    email: str
    redirect_url: str
