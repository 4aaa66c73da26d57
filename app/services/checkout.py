"""Checkout session initiator: pending payment, checkout context and hosted session in one step."""
from __future__ import annotations

import logging
import secrets
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.checkout_context import CheckoutContext, ContextStatus, ContextType
from app.models.payment import Payment, PaymentStatus
from app.schemas.checkout import (
    BookingCheckoutCreate,
    CartCheckoutCreate,
    CartItem,
    CheckoutInitCreate,
    CheckoutInitRead,
    CheckoutSessionRead,
)
from app.services.psp_stripe import LineItem, ProcessorError, StripeClient
from app.utils.audit import log_audit
from app.utils.errors import NotFound, UpstreamError, ValidationError
from app.utils.money import Currency, quantize_cents, to_settlement

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return secrets.token_hex(16)


def _exchange_rate(requested: Decimal | None) -> Decimal:
    if requested is not None and requested > 0:
        return requested
    return get_settings().LKR_TO_USD


def compute_cart_totals(
    cart: list[CartItem], currency: Currency, rate: Decimal
) -> tuple[Decimal, list[LineItem]]:
    """Price a cart in the settlement currency.

    The total converts the raw sum once; every line converts its own unit price.
    Rounding each line independently means the processor's sum of lines can
    differ from ``total`` by a few cents.
    """

    if not cart:
        raise ValidationError("EMPTY_CART", "Cart is empty.")

    raw_total = sum((item.unit_price * item.quantity for item in cart), Decimal("0"))
    total = to_settlement(raw_total, currency, rate)
    lines = [
        LineItem(
            name=item.product_name or "Product",
            unit_amount=to_settlement(item.unit_price, currency, rate),
            quantity=item.quantity,
        )
        for item in cart
    ]
    return total, lines


def _open_checkout(
    db: Session,
    processor: StripeClient,
    *,
    context_type: ContextType,
    name: str,
    email: str,
    amount: Decimal,
    package_type: str,
    line_items: list[LineItem],
    cancel_path: str,
    currency: Currency = Currency.USD,
    booking_data: dict[str, Any] | None = None,
    cart: list[dict[str, Any]] | None = None,
) -> CheckoutSessionRead:
    if amount <= 0:
        raise ValidationError("INVALID_AMOUNT", "Amount must be greater than zero.")

    settings = get_settings()
    token = _new_token()

    payment = Payment(
        name=name,
        email=email,
        amount=amount,
        package_type=package_type,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    db.flush()

    context = CheckoutContext(
        token=token,
        type=context_type,
        name=name,
        email=email,
        amount=amount,
        package_type=package_type,
        currency=currency.value,
        booking_data=booking_data,
        cart=cart,
        status=ContextStatus.INIT,
        payment_id=payment.id,
    )
    db.add(context)
    db.flush()

    try:
        session = processor.create_checkout_session(
            customer_email=email,
            line_items=line_items,
            metadata={"payment_id": str(payment.id), "token": token},
            success_url=(
                f"{settings.FRONTEND_URL}/payment-success"
                f"?session_id={{CHECKOUT_SESSION_ID}}&t={token}"
            ),
            cancel_url=f"{settings.FRONTEND_URL}{cancel_path}",
        )
    except ProcessorError as exc:
        db.rollback()
        logger.warning(
            "Checkout session rejected; payment discarded",
            extra={"context_type": context_type.value, "transient": exc.transient},
        )
        raise UpstreamError("CHECKOUT_SESSION_FAILED", str(exc)) from exc

    if not session.url:
        db.rollback()
        raise UpstreamError("CHECKOUT_SESSION_FAILED", "Processor returned no checkout URL.")

    payment.processor_session_id = session.id
    log_audit(
        db,
        actor="checkout",
        action="CHECKOUT_STARTED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "context_type": context_type.value,
            "amount": str(amount),
            "package_type": package_type,
            "token": token,
            "email": email,
        },
    )
    db.commit()
    logger.info(
        "Checkout session created",
        extra={"payment_id": payment.id, "context_type": context_type.value, "token_prefix": token[:6]},
    )
    return CheckoutSessionRead(url=session.url)


def start_booking_checkout(
    db: Session, payload: BookingCheckoutCreate, processor: StripeClient
) -> CheckoutSessionRead:
    """Open a hosted checkout for a single booking."""

    amount = quantize_cents(payload.amount)
    return _open_checkout(
        db,
        processor,
        context_type=ContextType.BOOKING,
        name=payload.name,
        email=payload.email,
        amount=amount,
        package_type=payload.package_type,
        line_items=[LineItem(name=payload.package_type, unit_amount=amount)],
        cancel_path="/add_booking?canceled=1",
        booking_data=payload.booking_data,
    )


def start_cart_checkout(
    db: Session, payload: CartCheckoutCreate, processor: StripeClient
) -> CheckoutSessionRead:
    """Open a hosted checkout for a shop cart, converting prices to the settlement currency."""

    rate = _exchange_rate(payload.exchange_rate)
    total, line_items = compute_cart_totals(payload.cart, payload.currency, rate)
    return _open_checkout(
        db,
        processor,
        context_type=ContextType.CART,
        name=payload.name,
        email=payload.email,
        amount=total,
        package_type=f"Cart ({len(payload.cart)} items)",
        line_items=line_items,
        cancel_path="/cart?canceled=1",
        currency=payload.currency,
        cart=[item.model_dump(mode="json") for item in payload.cart],
    )


def init_checkout_context(db: Session, payload: CheckoutInitCreate) -> CheckoutInitRead:
    """Park a booking behind a token for the payments front-end; no payment is created yet."""

    token = _new_token()
    context = CheckoutContext(
        token=token,
        type=ContextType.BOOKING,
        name=payload.name,
        email=payload.email,
        amount=quantize_cents(payload.amount),
        package_type=payload.package_type,
        booking_data=payload.booking_data,
        status=ContextStatus.INIT,
    )
    db.add(context)
    db.flush()
    log_audit(
        db,
        actor="checkout",
        action="CHECKOUT_CONTEXT_CREATED",
        entity="CheckoutContext",
        entity_id=context.id,
        data={"token": token, "amount": str(context.amount), "package_type": context.package_type},
    )
    db.commit()
    redirect_url = f"{get_settings().PAYMENTS_FRONTEND_URL}/pay?t={token}"
    return CheckoutInitRead(token=token, redirect_url=redirect_url)


def get_context_by_token(db: Session, token: str) -> CheckoutContext | None:
    return db.scalar(select(CheckoutContext).where(CheckoutContext.token == token))


def get_context_summary(db: Session, token: str) -> CheckoutContext:
    context = get_context_by_token(db, token)
    if context is None:
        raise NotFound("CONTEXT_NOT_FOUND", "Checkout context not found.")
    return context


__all__ = [
    "compute_cart_totals",
    "get_context_by_token",
    "get_context_summary",
    "init_checkout_context",
    "start_booking_checkout",
    "start_cart_checkout",
]
