"""ORM models package."""
from .api_key import ApiKey, ApiRole
from .audit import AuditLog
from .base import Base
from .payment import Currency, Payment, PaymentStatus, PaymentType
from .payout import TERMINAL_PAYOUT_STATUSES, Payout, PayoutStatus
from .scheduler_lock import SchedulerLock
from .subscription import BillingCycle, Subscription, SubscriptionPlan, SubscriptionStatus
from .webhook_event import WebhookEvent

__all__ = [
    "ApiKey",
    "ApiRole",
    "AuditLog",
    "Base",
    "BillingCycle",
    "Currency",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "Payout",
    "PayoutStatus",
    "SchedulerLock",
    "Subscription",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "TERMINAL_PAYOUT_STATUSES",
    "WebhookEvent",
]
