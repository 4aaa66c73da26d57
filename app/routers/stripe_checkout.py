"""Stripe hosted checkout, confirmation and webhook endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.checkout import BookingCheckoutCreate, CartCheckoutCreate, CheckoutSessionRead
from app.schemas.payment import CheckoutConfirmationRead
from app.services import checkout as checkout_service
from app.services import psp_webhooks
from app.services.booking_gateway import BookingSystemClient, get_booking_client
from app.services.confirmation import confirm_checkout
from app.services.psp_stripe import StripeClient, get_payment_processor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["stripe"])


@router.post("/checkout/booking", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def create_booking_checkout(
    payload: BookingCheckoutCreate,
    db: Session = Depends(get_db),
    processor: StripeClient = Depends(get_payment_processor),
):
    """Create a pending payment for a booking and return the hosted checkout URL."""

    return checkout_service.start_booking_checkout(db, payload, processor)


@router.post("/checkout/cart", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def create_cart_checkout(
    payload: CartCheckoutCreate,
    db: Session = Depends(get_db),
    processor: StripeClient = Depends(get_payment_processor),
):
    return checkout_service.start_cart_checkout(db, payload, processor)


@router.get("/checkout/confirm", response_model=CheckoutConfirmationRead)
def confirm(
    session_id: str | None = Query(default=None),
    token: str | None = Query(default=None, alias="t"),
    db: Session = Depends(get_db),
    processor: StripeClient = Depends(get_payment_processor),
    booking_client: BookingSystemClient = Depends(get_booking_client),
):
    """Resolve the success-page redirect; safe to call repeatedly."""

    return confirm_checkout(
        db,
        session_id=session_id,
        token=token,
        processor=processor,
        booking_client=booking_client,
    )


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    processor: StripeClient = Depends(get_payment_processor),
    booking_client: BookingSystemClient = Depends(get_booking_client),
) -> dict[str, bool]:
    payload = await request.body()
    return psp_webhooks.handle_stripe_webhook(
        db,
        payload=payload,
        sig_header=request.headers.get("Stripe-Signature"),
        processor=processor,
        booking_client=booking_client,
    )


__all__ = ["router"]
