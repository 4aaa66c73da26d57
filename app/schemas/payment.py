"""Schemas for payment entities."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict

from app.models.payment import PaymentStatus


class PaymentRead(BaseModel):
    id: int
    name: str
    email: str
    amount: Decimal
    package_type: str
    status: PaymentStatus
    transaction_id: str | None
    payment_date: datetime
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CheckoutConfirmationRead(PaymentRead):
    """The payment merged with whatever its checkout context carried."""

    booking: dict[str, Any] | None = None
    cart: list[dict[str, Any]] | None = None


class MonthlyIncome(BaseModel):
    month: str
    total: Decimal
    count: int


class MonthlyIncomeReport(BaseModel):
    months: list[MonthlyIncome]
    total: Decimal
    paid_count: int
    avg_ticket: Decimal
    best_month: str | None
    best_total: Decimal
