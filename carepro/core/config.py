"""
Billing constants and enums.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum


class ServiceType(str, Enum):
    """How a gig purchase is billed."""
    ONE_TIME = "one-time"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BillingCycle(str, Enum):
    """Recurring billing cycles."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PaymentStatus(str, Enum):
    """Lifecycle of a one-time PendingPayment."""
    PENDING = "pending"
    PROCESSING = "processing"  # completion claimed, order being created
    COMPLETED = "completed"
    FAILED = "failed"
    AMOUNT_MISMATCH = "amount_mismatch"


class SubscriptionStatus(str, Enum):
    """Recurring subscription status."""
    ACTIVE = "active"
    CHARGING = "charging"  # recurring charge in flight
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    PAUSED = "paused"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"
    EXPIRED = "expired"


class ChargeStatus(str, Enum):
    """Status of a single recurring charge record."""
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class PlanChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class Actor(str, Enum):
    """Who performed a lifecycle action."""
    CLIENT = "client"
    CAREGIVER = "caregiver"
    ADMIN = "admin"
    SYSTEM = "system"


class RecipientRole(str, Enum):
    """Notification recipients, resolved against the subscription or configuration."""
    CLIENT = "client"
    CAREGIVER = "caregiver"
    ADMINS = "admins"


class RefundStatus(str, Enum):
    NONE = "none"
    PENDING_REVIEW = "pending_review"


class NotificationType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_TERMINATED = "subscription_terminated"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    PLAN_CHANGED = "plan_changed"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"
    REFUND_REVIEW = "refund_review"


# Fee rules
SERVICE_CHARGE_RATE = Decimal("0.10")
GATEWAY_FEE_RATE = Decimal("0.014")
GATEWAY_FEE_CAP = Decimal("2000")
WEEKS_PER_MONTH = 4
MIN_VISITS_PER_WEEK = 1
MAX_VISITS_PER_WEEK = 7

# Monthly recurring revenue multiplier for weekly subscriptions
WEEKLY_TO_MONTHLY_FACTOR = Decimal("4.33")

# Length of one billing period
BILLING_PERIOD_DAYS = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.MONTHLY: 30,
}

# Service types that can be bought through a PendingPayment
PURCHASABLE_SERVICE_TYPES = (ServiceType.ONE_TIME, ServiceType.MONTHLY)

# Gig states that accept purchases
PURCHASABLE_GIG_STATUSES = ("active", "published")

# Subscription states that count as the single live subscription for a client and gig
LIVE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CHARGING,
)

TERMINAL_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.TERMINATED,
    SubscriptionStatus.EXPIRED,
)

CHARGEABLE_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
)

# Transaction reference prefixes
REFERENCE_PREFIX = "CAREPRO"
RECURRING_REFERENCE_PREFIX = "CAREPRO-RECURRING"
CARD_UPDATE_REFERENCE_PREFIX = "CAREPRO-CARDUPDATE"
INITIAL_PAYMENT_REFERENCE_PREFIX = "INIT"

CONTRACT_TERMINAL_STATUSES = ("terminated", "completed")


def generate_transaction_reference(prefix: str, now: datetime) -> str:
    """Merchant reference such as CAREPRO-20250101-1A2B3C4D."""
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def period_length(billing_cycle: str) -> timedelta:
    """Length of one billing period for a cycle."""
    return timedelta(days=BILLING_PERIOD_DAYS[BillingCycle(billing_cycle)])
