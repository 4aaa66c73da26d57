"""Schema package exports."""
from .checkout import (
    BookingCheckoutCreate,
    CartCheckoutCreate,
    CartItem,
    CheckoutInitCreate,
    CheckoutInitRead,
    CheckoutSessionRead,
    ContextRead,
    ContextSummary,
)
from .payment import CheckoutConfirmationRead, MonthlyIncome, MonthlyIncomeReport, PaymentRead
from .refund import RefundCreate, RefundDecision, RefundRead

__all__ = [
    "BookingCheckoutCreate",
    "CartCheckoutCreate",
    "CartItem",
    "CheckoutConfirmationRead",
    "CheckoutInitCreate",
    "CheckoutInitRead",
    "CheckoutSessionRead",
    "ContextRead",
    "ContextSummary",
    "MonthlyIncome",
    "MonthlyIncomeReport",
    "PaymentRead",
    "RefundCreate",
    "RefundDecision",
    "RefundRead",
]
