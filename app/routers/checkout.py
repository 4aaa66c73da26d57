"""Checkout context endpoints used by the booking and payments front-ends."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.schemas.checkout import CheckoutInitCreate, CheckoutInitRead, ContextRead, ContextSummary
from app.security import Actor, require_scope
from app.services import checkout as checkout_service
from app.services import confirmation as confirmation_service
from app.services.booking_gateway import BookingSystemClient, get_booking_client

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/init", response_model=CheckoutInitRead, status_code=status.HTTP_201_CREATED)
def init_checkout(payload: CheckoutInitCreate, db: Session = Depends(get_db)):
    """Store a booking behind a one-time token and return the payment page URL."""

    return checkout_service.init_checkout_context(db, payload)


@router.get("/context/{token}", response_model=ContextSummary)
def get_context(token: str, db: Session = Depends(get_db)):
    return checkout_service.get_context_summary(db, token)


@router.get("/contexts/unforwarded", response_model=list[ContextRead])
def list_unforwarded(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
):
    """Paid bookings that never reached the booking system."""

    return confirmation_service.list_unforwarded_contexts(db)


@router.post("/contexts/{token}/forward", response_model=ContextRead)
def retry_forward(
    token: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
    booking_client: BookingSystemClient = Depends(get_booking_client),
):
    return confirmation_service.retry_booking_forward(db, token, booking_client, actor)
