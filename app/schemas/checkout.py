"""Checkout and checkout-context schemas."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from app.models.checkout_context import ContextStatus, ContextType
from app.utils.money import Currency

EMAIL_PATTERN = r"^\S+@\S+\.\S+$"


class PayerFields(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", mode="before")
    @classmethod
    def _normalise_email(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class BookingCheckoutCreate(PayerFields):
    """Direct checkout from a booking form."""

    amount: Decimal = Field(gt=Decimal("0"))
    package_type: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("package_type", "packageType", "package"),
    )
    booking_data: dict[str, Any] = Field(validation_alias=AliasChoices("booking_data", "bookingData"))

    @field_validator("booking_data")
    @classmethod
    def _booking_not_empty(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("booking_data cannot be empty")
        return value


class CheckoutInitCreate(BookingCheckoutCreate):
    """Booking payload parked behind a token for the payments front-end to pick up."""


class CartItem(BaseModel):
    product_id: str | None = Field(default=None, validation_alias=AliasChoices("product_id", "productId", "_id"))
    product_name: str = Field(
        default="Product",
        max_length=255,
        validation_alias=AliasChoices("product_name", "productName", "p_name"),
    )
    unit_price: Decimal = Field(ge=Decimal("0"), validation_alias=AliasChoices("unit_price", "unitPrice", "p_price"))
    quantity: int = Field(default=1, ge=1)


class CartCheckoutCreate(PayerFields):
    cart: list[CartItem]
    currency: Currency = Currency.USD
    exchange_rate: Decimal | None = Field(
        default=None,
        gt=Decimal("0"),
        validation_alias=AliasChoices("exchange_rate", "exchangeRate", "rate"),
    )

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class CheckoutSessionRead(BaseModel):
    url: str


class CheckoutInitRead(BaseModel):
    token: str
    redirect_url: str


class ContextSummary(BaseModel):
    """What the payment page needs to pre-fill itself."""

    token: str
    name: str
    email: str
    amount: Decimal
    package_type: str
    status: ContextStatus

    model_config = ConfigDict(from_attributes=True)


class ContextRead(ContextSummary):
    type: ContextType
    payment_id: int | None
    booking_forwarded_at: datetime | None
    forward_error: str | None
    created_at: datetime
