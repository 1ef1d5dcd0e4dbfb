# Database models
from .payment import PendingPayment, PaymentInitiate
from .subscription import (
    Subscription,
    SubscriptionCreate,
    SubscriptionPaymentRecord,
    PlanChangeRecord,
    CancelRequest,
    TerminateRequest,
    PauseRequest,
    PlanChangeRequest,
    PaymentMethodUpdateRequest,
    PaymentMethodConfirmRequest,
    ContractLinkRequest,
)
from .marketplace import Gig, ClientOrder, Contract
from .billing import BillingRecord, Notification
