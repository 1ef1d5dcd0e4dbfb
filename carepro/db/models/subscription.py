"""
Recurring subscription model.

A subscription is created from a completed recurring purchase and charged
each period with the stored gateway token. Payment and plan-change
histories are embedded JSON lists written under the same versioned update
as the subscription row.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional
from sqlalchemy import Index, Integer, String, text
from sqlmodel import SQLModel, Field, Column, JSON
import uuid

from carepro.core.config import (
    ChargeStatus,
    LIVE_SUBSCRIPTION_STATUSES,
    SubscriptionStatus,

    utcnow,
)


_subscription_version = Column("version", Integer, nullable=False)

_LIVE_STATUS_FILTER = text(
    "status IN ({})".format(", ".join(f"'{s.value}'" for s in LIVE_SUBSCRIPTION_STATUSES))
)

CENTS = Decimal("0.01")


class SubscriptionPaymentRecord(SQLModel):
    """One charge against a subscription. Completed once, never edited afterwards."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    transaction_reference: str
    gateway_transaction_id: Optional[str] = None
    amount: Decimal
    currency: str = "NGN"
    status: str = ChargeStatus.PENDING.value
    error_message: Optional[str] = None
    billing_cycle_number: int
    attempted_at: datetime
    completed_at: Optional[datetime] = None
    client_order_id: Optional[str] = None


class PlanChangeRecord(SQLModel):
    """Audit entry for a billing cycle or frequency change."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    previous_billing_cycle: str
    new_billing_cycle: str
    previous_frequency_per_week: int
    new_frequency_per_week: int
    previous_amount: Decimal
    new_amount: Decimal
    change_type: str
    changed_at: datetime
    effective_date: datetime
    reason: Optional[str] = None


class SubscriptionCreate(SQLModel):
    """Input for creating a subscription from a settled recurring purchase."""
    client_id: str
    caregiver_id: str
    gig_id: str
    original_order_id: str
    billing_cycle: str
    frequency_per_week: int
    price_per_visit: Decimal
    currency: str = "NGN"
    email: Optional[str] = None
    payment_token: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    card_expiry: Optional[str] = None
    initial_transaction_id: Optional[str] = None
    contract_id: Optional[str] = None


class CancelRequest(SQLModel):
    reason: Optional[str] = None


class TerminateRequest(SQLModel):
    reason: str
    issue_refund: bool = True


class PauseRequest(SQLModel):
    reason: Optional[str] = None


class PlanChangeRequest(SQLModel):
    """New billing cycle and visit frequency for an active subscription."""
    billing_cycle: str
    frequency_per_week: int
    reason: Optional[str] = None


class PaymentMethodUpdateRequest(SQLModel):
    redirect_url: Optional[str] = None
    email: Optional[str] = None


class PaymentMethodConfirmRequest(SQLModel):
    transaction_id: str


class ContractLinkRequest(SQLModel):
    contract_id: str


class Subscription(SQLModel, table=True):
    """
    Recurring care subscription between a client and a caregiver.

    Status moves through an explicit set of transitions owned by
    SubscriptionService; this model only carries state and derived values.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_live_client_gig",
            "client_id",
            "gig_id",
            unique=True,
            sqlite_where=_LIVE_STATUS_FILTER,
            postgresql_where=_LIVE_STATUS_FILTER,
        ),
    )
    __mapper_args__ = {"version_id_col": _subscription_version}

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True,
        description="Unique subscription identifier"
    )

    # Parties and origin
    client_id: str = Field(index=True, description="Paying client")
    caregiver_id: str = Field(index=True, description="Caregiver providing the service")
    gig_id: str = Field(index=True, description="Gig subscribed to")
    original_order_id: str = Field(index=True, description="Order created by the initial payment")
    contract_id: Optional[str] = Field(default=None, description="Linked care contract, if any")

    # Plan
    billing_cycle: str = Field(description="weekly or monthly")
    frequency_per_week: int = Field(description="Visits per week")
    price_per_visit: Decimal = Field(max_digits=14, decimal_places=2)
    recurring_amount: Decimal = Field(
        max_digits=14,
        decimal_places=2,
        description="Amount charged each period, fees included"
    )
    currency: str = Field(default="NGN")
    price_breakdown: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # Lifecycle
    status: str = Field(
        default=SubscriptionStatus.ACTIVE.value,
        sa_column=Column(String, index=True, nullable=False),
        description="active, charging, past_due, suspended, paused, pending_cancellation, cancelled, terminated, expired"
    )
    auto_renew: bool = Field(default=True)
    current_period_start: datetime
    current_period_end: datetime
    next_charge_date: Optional[datetime] = Field(default=None, index=True)
    billing_cycles_completed: int = Field(default=0)

    # Retry state
    failed_charge_attempts: int = Field(default=0)
    max_retry_attempts: int = Field(default=3)
    last_charge_error: Optional[str] = Field(default=None)
    last_charge_attempt_at: Optional[datetime] = Field(default=None)

    # In-flight charge claim and timed-out charge awaiting reconciliation
    charge_reference: Optional[str] = Field(default=None)
    charge_started_at: Optional[datetime] = Field(default=None)
    unresolved_charge_reference: Optional[str] = Field(default=None)

    # Payment method (opaque token and masked card data only)
    payment_token: Optional[str] = Field(default=None)
    card_last_four: Optional[str] = Field(default=None)
    card_brand: Optional[str] = Field(default=None)
    card_expiry: Optional[str] = Field(default=None)
    email: Optional[str] = Field(default=None)
    pending_method_reference: Optional[str] = Field(default=None)

    # Cancellation
    cancel_at_period_end: bool = Field(default=False)
    cancellation_requested_at: Optional[datetime] = Field(default=None)
    cancellation_reason: Optional[str] = Field(default=None)
    cancelled_by: Optional[str] = Field(default=None, description="client, caregiver, admin or system")

    # Termination
    terminated_at: Optional[datetime] = Field(default=None)
    termination_reason: Optional[str] = Field(default=None)
    refund_amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    refund_status: Optional[str] = Field(default=None)

    # Histories
    payment_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    plan_change_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    # Metadata
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    version: Optional[int] = Field(default=None, sa_column=_subscription_version)

    def is_terminal(self) -> bool:
        return self.status in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.TERMINATED,
            SubscriptionStatus.EXPIRED,
        )

    def is_service_active(self, now: datetime) -> bool:
        """Whether the client is still entitled to care visits at ``now``."""
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CHARGING, SubscriptionStatus.PAST_DUE):
            return True
        return self.status == SubscriptionStatus.PENDING_CANCELLATION and now < self.current_period_end

    def remaining_days(self, now: datetime) -> int:
        return max(0, (self.current_period_end - now).days)

    def total_days(self) -> int:
        return max(1, (self.current_period_end - self.current_period_start).days)

    def calculate_pro_rated_refund(self, now: datetime) -> Decimal:
        """Unused share of the current period, in whole days, bounded by the recurring amount."""
        amount = Decimal(self.recurring_amount)
        remaining = self.remaining_days(now)
        if remaining <= 0:
            return Decimal("0.00")

        refund = (amount * remaining / self.total_days()).quantize(CENTS, rounding=ROUND_HALF_EVEN)
        return max(Decimal("0.00"), min(refund, amount))

    def get_payment_history(self) -> List[SubscriptionPaymentRecord]:
        return [SubscriptionPaymentRecord.model_validate(item) for item in self.payment_history or []]

    def get_plan_changes(self) -> List[PlanChangeRecord]:
        return [PlanChangeRecord.model_validate(item) for item in self.plan_change_history or []]

    def append_payment(self, record: SubscriptionPaymentRecord):
        # Reassign so the JSON column is flagged dirty
        self.payment_history = [*(self.payment_history or []), record.model_dump(mode="json")]

    def replace_payment(self, record: SubscriptionPaymentRecord):
        """Store the completed form of a pending payment record."""
        history = list(self.payment_history or [])
        for index, item in enumerate(history):
            if item.get("id") == record.id:
                if item.get("status") != ChargeStatus.PENDING:
                    raise ValueError(f"Payment record {record.id} is already completed")
                history[index] = record.model_dump(mode="json")
                self.payment_history = history
                return
        raise ValueError(f"Payment record {record.id} not found")

    def append_plan_change(self, record: PlanChangeRecord):
        self.plan_change_history = [*(self.plan_change_history or []), record.model_dump(mode="json")]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "caregiver_id": self.caregiver_id,
            "gig_id": self.gig_id,
            "original_order_id": self.original_order_id,
            "contract_id": self.contract_id,
            "billing_cycle": self.billing_cycle,
            "frequency_per_week": self.frequency_per_week,
            "price_per_visit": str(self.price_per_visit),
            "recurring_amount": str(self.recurring_amount),
            "currency": self.currency,
            "price_breakdown": self.price_breakdown,
            "status": self.status,
            "auto_renew": self.auto_renew,
            "current_period_start": self.current_period_start.isoformat(),
            "current_period_end": self.current_period_end.isoformat(),
            "next_charge_date": self.next_charge_date.isoformat() if self.next_charge_date else None,
            "billing_cycles_completed": self.billing_cycles_completed,
            "failed_charge_attempts": self.failed_charge_attempts,
            "last_charge_error": self.last_charge_error,
            "card_last_four": self.card_last_four,
            "card_brand": self.card_brand,
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_by": self.cancelled_by,
            "terminated_at": self.terminated_at.isoformat() if self.terminated_at else None,
            "refund_amount": str(self.refund_amount) if self.refund_amount is not None else None,
            "refund_status": self.refund_status,
            "created_at": self.created_at.isoformat(),
        }
