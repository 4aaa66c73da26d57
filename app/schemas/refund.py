"""Refund request and decision schemas."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from app.models.refund import RefundReason, RefundStatus


class RefundCreate(BaseModel):
    # Amount bounds are checked by the service, after the eligibility checks.
    payment_id: int = Field(validation_alias=AliasChoices("payment_id", "paymentId"))
    amount: Decimal | None = None
    reason: RefundReason
    note: str | None = Field(default=None, max_length=2000)

    @field_validator("reason", mode="before")
    @classmethod
    def _normalise_reason(cls, value: Any) -> Any:
        # "Accidental payment" -> ACCIDENTAL_PAYMENT
        if isinstance(value, str):
            return value.strip().upper().replace(" ", "_")
        return value

    @field_validator("note")
    @classmethod
    def _strip_note(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class RefundDecision(BaseModel):
    action: Literal["approve", "deny"]
    amount: Decimal | None = None


class RefundRead(BaseModel):
    id: int
    payment_id: int
    user_email: str
    amount: Decimal
    reason: RefundReason
    note: str | None
    status: RefundStatus
    policy_window_days: int
    processor_refund_id: str | None
    decision_by: str | None
    decision_at: datetime | None
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
