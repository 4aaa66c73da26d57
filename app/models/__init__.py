"""ORM models package."""
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .checkout_context import CheckoutContext, ContextStatus, ContextType
from .payment import SETTLED_STATUSES, Payment, PaymentStatus
from .psp_webhook import PSPWebhookEvent
from .refund import OPEN_REFUND_STATUSES, Refund, RefundReason, RefundStatus

__all__ = [
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "CheckoutContext",
    "ContextStatus",
    "ContextType",
    "OPEN_REFUND_STATUSES",
    "Payment",
    "PaymentStatus",
    "PSPWebhookEvent",
    "Refund",
    "RefundReason",
    "RefundStatus",
    "SETTLED_STATUSES",
]
