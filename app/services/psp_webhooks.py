"""Services handling Stripe webhook callbacks."""
from __future__ import annotations

import logging
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.psp_webhook import PSPWebhookEvent
from app.models.refund import RefundStatus
from app.services import payments as payments_service
from app.services import refunds as refunds_service
from app.services.booking_gateway import BookingSystemClient
from app.services.confirmation import confirm_checkout
from app.services.psp_stripe import StripeClient, refund_from_payload
from app.utils.errors import NotFound, UpstreamError, ValidationError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "stripe"
_WEBHOOK_ACTOR = "stripe-webhook"
_REFUND_EVENTS = {"refund.updated", "charge.refund.updated"}
_WEBHOOK_SYNCED_REFUND_STATUSES = (RefundStatus.PROCESSING, RefundStatus.APPROVED, RefundStatus.REFUNDED)


def _already_processed(db: Session, event_id: str) -> bool:
    stmt = select(PSPWebhookEvent.id).where(
        PSPWebhookEvent.provider == PROVIDER,
        PSPWebhookEvent.event_id == event_id,
        PSPWebhookEvent.processed_at.is_not(None),
    )
    return db.scalar(stmt) is not None


def _session_completed(
    db: Session, obj: dict[str, Any], processor: StripeClient, booking_client: BookingSystemClient
) -> None:
    metadata = obj.get("metadata") or {}
    try:
        confirm_checkout(
            db,
            session_id=obj.get("id"),
            token=metadata.get("token"),
            processor=processor,
            booking_client=booking_client,
        )
    except NotFound as exc:
        # Sessions created outside this service; acknowledging stops Stripe retries.
        logger.warning("Completed session has no local payment", extra={"code": exc.code})


def _session_expired(db: Session, obj: dict[str, Any]) -> None:
    raw_id = (obj.get("metadata") or {}).get("payment_id")
    if not raw_id or not str(raw_id).isdigit():
        logger.info("Expired session without payment metadata", extra={"session_id": obj.get("id")})
        return
    payments_service.expire_pending_payment(db, int(raw_id))


def _refund_updated(db: Session, obj: dict[str, Any]) -> None:
    outcome = refund_from_payload(obj)
    refund = refunds_service.find_refund_for_processor(db, outcome)
    if refund is None:
        logger.info("Refund event for unknown refund", extra={"processor_status": outcome.status})
        return
    if refund.status not in _WEBHOOK_SYNCED_REFUND_STATUSES:
        logger.info(
            "Refund event ignored for settled refund",
            extra={"refund_id": refund.id, "status": refund.status.value},
        )
        return
    refunds_service.apply_processor_refund(db, refund, outcome, actor=_WEBHOOK_ACTOR)


def handle_stripe_webhook(
    db: Session,
    *,
    payload: bytes,
    sig_header: str | None,
    processor: StripeClient,
    booking_client: BookingSystemClient,
) -> dict[str, bool]:
    """Verify, de-duplicate and dispatch a Stripe webhook event."""

    if not get_settings().STRIPE_ENABLED:
        logger.warning("Stripe webhook received while Stripe is disabled")
        raise UpstreamError("STRIPE_DISABLED", "Stripe integration is disabled.", status_code=503)
    if not sig_header:
        raise ValidationError("STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required.")

    try:
        event = processor.construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe signature verification failed")
        raise ValidationError("STRIPE_SIGNATURE_INVALID", "Invalid Stripe signature.") from exc
    except RuntimeError as exc:
        logger.error("Stripe webhook configuration error", exc_info=True)
        raise UpstreamError("STRIPE_NOT_CONFIGURED", str(exc), status_code=503) from exc
    except ValueError as exc:
        raise ValidationError("STRIPE_EVENT_INVALID", "Invalid Stripe webhook payload.") from exc

    event_id = event.get("id")
    event_type = event.get("type") or "unknown"
    if not event_id:
        raise ValidationError("MISSING_EVENT_ID", "Webhook event id is required.")

    if _already_processed(db, event_id):
        logger.info("Duplicate Stripe event ignored", extra={"event_id": event_id, "event_type": event_type})
        return {"received": True}

    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Stripe webhook received", extra={"event_id": event_id, "event_type": event_type})

    if event_type == "checkout.session.completed":
        _session_completed(db, obj, processor, booking_client)
    elif event_type == "checkout.session.expired":
        _session_expired(db, obj)
    elif event_type in _REFUND_EVENTS:
        _refund_updated(db, obj)
    else:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type})

    record = PSPWebhookEvent(
        provider=PROVIDER,
        event_id=event_id,
        kind=event_type,
        object_id=obj.get("id"),
        raw_json=event,
        processed_at=utcnow(),
    )
    try:
        db.add(record)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Stripe event recorded concurrently", extra={"event_id": event_id})
    return {"received": True}


__all__ = ["handle_stripe_webhook"]
