"""Checkout confirmation: settle the payment, consume the context, forward the booking once."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from app.models.checkout_context import CheckoutContext, ContextStatus, ContextType
from app.models.payment import Payment, PaymentStatus
from app.schemas.payment import CheckoutConfirmationRead, PaymentRead
from app.security import Actor
from app.services.booking_gateway import BookingForwardError, BookingSystemClient
from app.services.checkout import get_context_by_token
from app.services.psp_stripe import ProcessorError, ProcessorSession, StripeClient
from app.utils.audit import log_audit
from app.utils.errors import ConflictError, NotFound, UpstreamError, ValidationError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

_CONFIRMABLE = (PaymentStatus.PENDING, PaymentStatus.FAILED)
# Longer than the booking client's timeout, so a live forward is never taken over.
FORWARD_LEASE = timedelta(minutes=5)


def _payment_id_from(session: ProcessorSession) -> int | None:
    raw = session.metadata.get("payment_id")
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _mark_paid(db: Session, payment: Payment, session: ProcessorSession) -> bool:
    """PENDING/FAILED -> PAID. Returns False when the payment was already settled."""

    transaction_id = session.payment_intent_id or session.id
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(_CONFIRMABLE))
        .values(status=PaymentStatus.PAID, transaction_id=transaction_id, payment_date=utcnow())
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(payment)
        return False

    log_audit(
        db,
        actor="processor",
        action="PAYMENT_CONFIRMED",
        entity="Payment",
        entity_id=payment.id,
        data={"transaction_id": transaction_id, "session_id": session.id},
    )
    db.commit()
    db.refresh(payment)
    logger.info("Payment confirmed", extra={"payment_id": payment.id})
    return True


def claim_context(db: Session, context: CheckoutContext, payment: Payment) -> bool:
    """INIT -> PAID for exactly one caller; only the winner may run side effects."""

    values: dict = {"status": ContextStatus.PAID}
    if context.payment_id is None:
        values["payment_id"] = payment.id
    if context.type == ContextType.BOOKING:
        # The claimer forwards next; hold the lease so a retry cannot overlap.
        values["forward_attempt_at"] = utcnow()
    result = db.execute(
        update(CheckoutContext)
        .where(CheckoutContext.id == context.id, CheckoutContext.status == ContextStatus.INIT)
        .values(**values)
    )
    claimed = result.rowcount == 1
    if claimed:
        log_audit(
            db,
            actor="processor",
            action="CONTEXT_CONSUMED",
            entity="CheckoutContext",
            entity_id=context.id,
            data={"payment_id": payment.id, "type": context.type.value},
        )
        db.commit()
    else:
        db.rollback()
    db.refresh(context)
    return claimed


def lease_forward(db: Session, context: CheckoutContext, *, now: datetime | None = None) -> bool:
    """Take the forward lease on a paid, unforwarded booking context.

    Succeeds for one caller only, and only when no forward is in flight or the
    previous holder's lease is older than ``FORWARD_LEASE``.
    """

    now = now or utcnow()
    result = db.execute(
        update(CheckoutContext)
        .where(
            CheckoutContext.id == context.id,
            CheckoutContext.type == ContextType.BOOKING,
            CheckoutContext.status == ContextStatus.PAID,
            CheckoutContext.booking_forwarded_at.is_(None),
            or_(
                CheckoutContext.forward_attempt_at.is_(None),
                CheckoutContext.forward_attempt_at < now - FORWARD_LEASE,
            ),
        )
        .values(forward_attempt_at=now)
    )
    leased = result.rowcount == 1
    if leased:
        db.commit()
    else:
        db.rollback()
    db.refresh(context)
    return leased


def forward_booking(db: Session, context: CheckoutContext, booking_client: BookingSystemClient) -> bool:
    """Send the booking payload to the booking system and record the outcome on the context."""

    try:
        booking_client.create_booking(context.booking_data or {})
    except BookingForwardError as exc:
        context.forward_error = str(exc)[:500]
        context.forward_attempt_at = None
        log_audit(
            db,
            actor="processor",
            action="BOOKING_FORWARD_FAILED",
            entity="CheckoutContext",
            entity_id=context.id,
            data={"payment_id": context.payment_id, "error": str(exc)},
        )
        db.commit()
        logger.error(
            "Booking forward failed; context awaiting reconciliation",
            extra={"context_id": context.id, "payment_id": context.payment_id},
        )
        return False

    context.booking_forwarded_at = utcnow()
    context.forward_error = None
    log_audit(
        db,
        actor="processor",
        action="BOOKING_FORWARDED",
        entity="CheckoutContext",
        entity_id=context.id,
        data={"payment_id": context.payment_id},
    )
    db.commit()
    logger.info("Booking forwarded", extra={"context_id": context.id, "payment_id": context.payment_id})
    return True


def _confirmation(payment: Payment, context: CheckoutContext | None) -> CheckoutConfirmationRead:
    base = PaymentRead.model_validate(payment).model_dump()
    if context is None:
        return CheckoutConfirmationRead(**base)
    return CheckoutConfirmationRead(**base, booking=context.booking_data, cart=context.cart)


def confirm_checkout(
    db: Session,
    *,
    session_id: str | None,
    token: str | None,
    processor: StripeClient,
    booking_client: BookingSystemClient,
) -> CheckoutConfirmationRead:
    """Resolve a returning checkout into a settled payment plus its booking or cart.

    Safe to call any number of times for the same session: the payment is only
    settled while PENDING/FAILED and the context is only consumed while INIT.
    """

    if not session_id:
        raise ValidationError("SESSION_ID_REQUIRED", "session_id is required.")

    try:
        session = processor.retrieve_checkout_session(session_id)
    except ProcessorError as exc:
        raise UpstreamError("PROCESSOR_UNAVAILABLE", str(exc)) from exc
    if session is None:
        raise NotFound("CHECKOUT_SESSION_NOT_FOUND", "Checkout session not found.")

    payment_id = _payment_id_from(session)
    payment = db.get(Payment, payment_id) if payment_id is not None else None
    if payment is None:
        raise NotFound("PAYMENT_NOT_FOUND", "Payment not found.")

    if not session.is_paid:
        logger.info("Checkout session not paid yet", extra={"payment_id": payment.id})
        return _confirmation(payment, None)

    _mark_paid(db, payment, session)

    token = session.metadata.get("token") or token
    context = get_context_by_token(db, token) if token else None
    if context is not None and context.payment_id not in (None, payment.id):
        logger.warning(
            "Checkout context belongs to another payment; ignoring",
            extra={"payment_id": payment.id, "context_id": context.id},
        )
        context = None

    if context is not None and context.status == ContextStatus.INIT:
        if claim_context(db, context, payment) and context.type == ContextType.BOOKING:
            forward_booking(db, context, booking_client)

    return _confirmation(payment, context)


def list_unforwarded_contexts(db: Session) -> list[CheckoutContext]:
    """Paid booking contexts whose booking never reached the booking system."""

    stmt = (
        select(CheckoutContext)
        .where(
            CheckoutContext.type == ContextType.BOOKING,
            CheckoutContext.status == ContextStatus.PAID,
            CheckoutContext.booking_forwarded_at.is_(None),
        )
        .order_by(CheckoutContext.created_at.asc(), CheckoutContext.id.asc())
    )
    return list(db.scalars(stmt))


def retry_booking_forward(
    db: Session, token: str, booking_client: BookingSystemClient, actor: Actor
) -> CheckoutContext:
    context = get_context_by_token(db, token)
    if context is None:
        raise NotFound("CONTEXT_NOT_FOUND", "Checkout context not found.")
    if not context.awaiting_forward:
        raise ConflictError("CONTEXT_NOT_AWAITING_FORWARD", "Context has no pending booking forward.")
    if not lease_forward(db, context):
        if not context.awaiting_forward:
            raise ConflictError("CONTEXT_NOT_AWAITING_FORWARD", "Context has no pending booking forward.")
        raise ConflictError("FORWARD_IN_PROGRESS", "A booking forward for this context is already in flight.")

    logger.info("Retrying booking forward", extra={"context_id": context.id, "actor": actor.ident})
    if not forward_booking(db, context, booking_client):
        raise UpstreamError(
            "BOOKING_FORWARD_FAILED",
            "Booking system rejected the booking again.",
            details={"forward_error": context.forward_error},
        )
    db.refresh(context)
    return context


__all__ = [
    "claim_context",
    "confirm_checkout",
    "forward_booking",
    "lease_forward",
    "list_unforwarded_contexts",
    "retry_booking_forward",
]
