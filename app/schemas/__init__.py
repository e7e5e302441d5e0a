"""Schema package exports."""
from .payment import (
    AMOUNT_LIMITS,
    ChapaWebhookPayload,
    PaymentInitializeIn,
    VerifyPaymentIn,
    validate_amount,
)
from .payout import PayoutRead, TransferIn
from .refund import RefundIn
from .subscription import SubscriptionCheckoutIn

__all__ = [
    "AMOUNT_LIMITS",
    "ChapaWebhookPayload",
    "PaymentInitializeIn",
    "PayoutRead",
    "RefundIn",
    "SubscriptionCheckoutIn",
    "TransferIn",
    "VerifyPaymentIn",
    "validate_amount",
]
