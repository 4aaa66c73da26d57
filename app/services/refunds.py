"""Refund lifecycle: request, admin decision, processor settlement and reconciliation."""
from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.payment import Payment, PaymentStatus
from app.models.refund import OPEN_REFUND_STATUSES, Refund, RefundStatus
from app.schemas.refund import RefundCreate, RefundDecision
from app.security import Actor
from app.services.psp_stripe import ProcessorError, ProcessorRefund, StripeClient
from app.utils.audit import log_audit
from app.utils.errors import AuthzError, ConflictError, NotFound, UpstreamError, ValidationError
from app.utils.money import quantize_cents
from app.utils.time import days_since, utcnow

logger = logging.getLogger(__name__)

_PROCESSOR_FAILED = {"failed", "canceled"}
COMMITTED_REFUND_STATUSES = (RefundStatus.PROCESSING, RefundStatus.APPROVED, RefundStatus.REFUNDED)
RECONCILABLE_STATUSES = (RefundStatus.PROCESSING, RefundStatus.APPROVED)


def _audit(db: Session, *, actor: str, action: str, refund: Refund, data: dict | None = None) -> None:
    log_audit(db, actor=actor, action=action, entity="Refund", entity_id=refund.id, data=data)


def _committed_total(db: Session, payment: Payment, *, exclude_id: int | None = None) -> Decimal:
    """Sum of refunds on ``payment`` that were issued or are being issued at the processor."""

    stmt = select(Refund.amount).where(
        Refund.payment_id == payment.id, Refund.status.in_(COMMITTED_REFUND_STATUSES)
    )
    if exclude_id is not None:
        stmt = stmt.where(Refund.id != exclude_id)
    return quantize_cents(sum((Decimal(amount) for amount in db.scalars(stmt)), Decimal("0")))


def _validated_amount(requested: Decimal | None, payment: Payment, already_refunded: Decimal) -> Decimal:
    remaining = quantize_cents(payment.amount) - already_refunded
    if requested is None:
        amount = remaining
    else:
        try:
            amount = quantize_cents(requested)
        except ValueError as exc:
            raise ValidationError("INVALID_REFUND_AMOUNT", "Refund amount is not a number.") from exc
    if amount <= 0 or amount > remaining:
        raise ValidationError(
            "INVALID_REFUND_AMOUNT",
            "Refund amount must be positive and at most the amount still refundable.",
            details={"payment_amount": str(payment.amount), "refundable_amount": str(remaining)},
        )
    return amount


def get_open_refund(db: Session, payment_id: int) -> Refund | None:
    stmt = select(Refund).where(Refund.payment_id == payment_id, Refund.status.in_(OPEN_REFUND_STATUSES))
    return db.scalars(stmt).first()


def request_refund(
    db: Session,
    payload: RefundCreate,
    actor: Actor,
    *,
    policy_window_days: int | None = None,
) -> Refund:
    """Open a refund request after the eligibility checks, in a fixed order."""

    window = policy_window_days or get_settings().REFUND_POLICY_WINDOW_DAYS

    payment = db.get(Payment, payload.payment_id)
    if payment is None:
        raise NotFound("PAYMENT_NOT_FOUND", "Payment not found.")
    if not (actor.is_admin or actor.owns(payment.email)):
        raise AuthzError("NOT_PAYMENT_OWNER", "You can only request refunds for your own payments.")
    if payment.status != PaymentStatus.PAID:
        raise ConflictError(
            "PAYMENT_NOT_REFUNDABLE",
            "Only paid payments can be refunded.",
            status_code=400,
            details={"status": payment.status.value},
        )
    elapsed = days_since(payment.payment_date)
    if elapsed > window:
        raise ConflictError(
            "REFUND_WINDOW_EXPIRED",
            f"Refunds are only available within {window} days of payment.",
            status_code=400,
            details={"elapsed_days": round(elapsed, 2), "policy_window_days": window},
        )
    if get_open_refund(db, payment.id) is not None:
        raise ConflictError("REFUND_ALREADY_OPEN", "A refund request is already open for this payment.")
    amount = _validated_amount(payload.amount, payment, _committed_total(db, payment))

    refund = Refund(
        payment_id=payment.id,
        user_email=actor.email.lower(),
        amount=amount,
        reason=payload.reason,
        note=payload.note,
        status=RefundStatus.REQUESTED,
        policy_window_days=window,
    )
    try:
        db.add(refund)
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.info("Concurrent refund request rejected", extra={"payment_id": payment.id})
        raise ConflictError(
            "REFUND_ALREADY_OPEN", "A refund request is already open for this payment."
        ) from exc

    _audit(
        db,
        actor=actor.ident,
        action="REFUND_REQUESTED",
        refund=refund,
        data={
            "payment_id": payment.id,
            "amount": str(amount),
            "reason": payload.reason.value,
            "user_email": refund.user_email,
            "policy_window_days": window,
        },
    )
    db.commit()
    db.refresh(refund)
    logger.info("Refund requested", extra={"refund_id": refund.id, "payment_id": payment.id})
    return refund


def _get_refund(db: Session, refund_id: int) -> Refund:
    refund = db.get(Refund, refund_id)
    if refund is None:
        raise NotFound("REFUND_NOT_FOUND", "Refund not found.")
    return refund


def _invalid_state(refund: Refund, expected: str) -> ConflictError:
    return ConflictError(
        "REFUND_INVALID_STATE",
        f"Refund must be {expected} (current: {refund.status.value}).",
        status_code=400,
        details={"status": refund.status.value},
    )


def _deny(db: Session, refund: Refund, actor: Actor) -> Refund:
    result = db.execute(
        update(Refund)
        .where(Refund.id == refund.id, Refund.status == RefundStatus.REQUESTED)
        .values(status=RefundStatus.DENIED, decision_by=actor.email, decision_at=utcnow())
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(refund)
        raise _invalid_state(refund, RefundStatus.REQUESTED.value)
    _audit(db, actor=actor.ident, action="REFUND_DENIED", refund=refund, data={"payment_id": refund.payment_id})
    db.commit()
    db.refresh(refund)
    logger.info("Refund denied", extra={"refund_id": refund.id})
    return refund


def _settle_payment(db: Session, refund: Refund, payment: Payment, actor: str) -> None:
    """PAID -> REFUNDED once this refund and the others already issued cover the payment."""

    if payment.status != PaymentStatus.PAID:
        return
    total = _committed_total(db, payment, exclude_id=refund.id) + refund.amount
    if total >= payment.amount:
        payment.status = PaymentStatus.REFUNDED
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_REFUNDED",
            entity="Payment",
            entity_id=payment.id,
            data={"refund_id": refund.id, "amount": str(refund.amount), "refunded_total": str(total)},
        )


def _unsettle_payment(db: Session, refund: Refund, payment: Payment, actor: str) -> None:
    if payment.status != PaymentStatus.REFUNDED:
        return
    if _committed_total(db, payment, exclude_id=refund.id) < payment.amount:
        payment.status = PaymentStatus.PAID
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_REFUND_REVERSED",
            entity="Payment",
            entity_id=payment.id,
            data={"refund_id": refund.id},
        )


def _fail(db: Session, refund: Refund, reason: str, actor: str) -> None:
    refund.status = RefundStatus.FAILED
    refund.failure_reason = reason[:500]
    _unsettle_payment(db, refund, refund.payment, actor)
    _audit(db, actor=actor, action="REFUND_FAILED", refund=refund, data={"failure_reason": reason})


def _approve(db: Session, refund: Refund, decision: RefundDecision, actor: Actor, processor: StripeClient) -> Refund:
    payment = refund.payment
    amount = _validated_amount(
        decision.amount if decision.amount is not None else refund.amount,
        payment,
        _committed_total(db, payment, exclude_id=refund.id),
    )
    if payment.status != PaymentStatus.PAID:
        raise ConflictError(
            "PAYMENT_NOT_REFUNDABLE",
            "Only paid payments can be refunded.",
            status_code=400,
            details={"status": payment.status.value},
        )
    if not payment.transaction_id:
        raise ValidationError("PAYMENT_MISSING_TRANSACTION", "Payment has no processor transaction to refund.")

    claim = db.execute(
        update(Refund)
        .where(Refund.id == refund.id, Refund.status == RefundStatus.REQUESTED)
        .values(
            status=RefundStatus.PROCESSING,
            amount=amount,
            decision_by=actor.email,
            decision_at=utcnow(),
        )
    )
    if claim.rowcount != 1:
        db.rollback()
        db.refresh(refund)
        raise _invalid_state(refund, RefundStatus.REQUESTED.value)
    _audit(db, actor=actor.ident, action="REFUND_PROCESSING", refund=refund, data={"amount": str(amount)})
    db.commit()
    db.refresh(refund)

    try:
        outcome = processor.create_refund(
            payment_intent_id=payment.transaction_id,
            amount=amount,
            metadata={"refund_id": str(refund.id), "payment_id": str(payment.id)},
            idempotency_key=f"refund_{refund.id}_{amount}",
        )
    except ProcessorError as exc:
        _fail(db, refund, str(exc), actor.ident)
        db.commit()
        logger.error(
            "Refund processor call failed",
            extra={"refund_id": refund.id, "payment_id": payment.id, "transient": exc.transient},
        )
        raise UpstreamError(
            "REFUND_PROCESSOR_FAILED",
            "The payment processor could not complete the refund.",
            details={"refund_id": refund.id},
        ) from exc

    refund.processor_refund_id = outcome.id
    if outcome.status in _PROCESSOR_FAILED:
        _fail(db, refund, f"Processor reported refund {outcome.status}", actor.ident)
        db.commit()
        raise UpstreamError(
            "REFUND_PROCESSOR_FAILED",
            f"The payment processor reported the refund as {outcome.status}.",
            details={"refund_id": refund.id},
        )

    refund.status = RefundStatus.REFUNDED if outcome.succeeded else RefundStatus.APPROVED
    refund.failure_reason = None
    _settle_payment(db, refund, payment, actor.ident)
    _audit(
        db,
        actor=actor.ident,
        action="REFUND_SUCCEEDED" if outcome.succeeded else "REFUND_PENDING_SETTLEMENT",
        refund=refund,
        data={"processor_refund_id": outcome.id, "processor_status": outcome.status},
    )
    db.commit()
    db.refresh(refund)
    logger.info("Refund approved", extra={"refund_id": refund.id, "status": refund.status.value})
    return refund


def decide_refund(
    db: Session,
    refund_id: int,
    decision: RefundDecision,
    actor: Actor,
    processor: StripeClient,
) -> Refund:
    """Approve (issuing the processor refund) or deny a REQUESTED refund."""

    if not actor.is_admin:
        raise AuthzError("INSUFFICIENT_SCOPE", "Only admins can decide refunds.")
    refund = _get_refund(db, refund_id)
    if refund.status != RefundStatus.REQUESTED:
        raise _invalid_state(refund, RefundStatus.REQUESTED.value)

    if decision.action == "deny":
        return _deny(db, refund, actor)
    return _approve(db, refund, decision, actor, processor)


def apply_processor_refund(db: Session, refund: Refund, outcome: ProcessorRefund, *, actor: str) -> bool:
    """Bring ``refund`` in line with the processor's view of it. Returns True if anything changed."""

    before = refund.status
    linked = refund.processor_refund_id is None
    if linked:
        refund.processor_refund_id = outcome.id

    if outcome.succeeded:
        refund.status = RefundStatus.REFUNDED
        refund.failure_reason = None
        _settle_payment(db, refund, refund.payment, actor)
    elif outcome.status in _PROCESSOR_FAILED:
        if before != RefundStatus.FAILED:
            _fail(db, refund, f"Processor reported refund {outcome.status}", actor)
    elif before == RefundStatus.PROCESSING:
        refund.status = RefundStatus.APPROVED

    changed = linked or refund.status != before
    if changed:
        _audit(
            db,
            actor=actor,
            action="REFUND_RECONCILED",
            refund=refund,
            data={"from": before.value, "to": refund.status.value, "processor_status": outcome.status},
        )
    db.commit()
    db.refresh(refund)
    return changed


def _locate_processor_refund(refund: Refund, processor: StripeClient) -> ProcessorRefund | None:
    if refund.processor_refund_id:
        return processor.retrieve_refund(refund.processor_refund_id)
    transaction_id = refund.payment.transaction_id
    if not transaction_id:
        return None
    for candidate in processor.list_refunds(transaction_id):
        if candidate.metadata.get("refund_id") == str(refund.id):
            return candidate
    return None


def reconcile_refund(db: Session, refund_id: int, processor: StripeClient, actor: Actor) -> Refund:
    """Resolve a PROCESSING/APPROVED refund against the processor without ever issuing a new one."""

    refund = _get_refund(db, refund_id)
    if refund.status not in RECONCILABLE_STATUSES:
        raise _invalid_state(refund, "PROCESSING or APPROVED")

    try:
        outcome = _locate_processor_refund(refund, processor)
    except ProcessorError as exc:
        raise UpstreamError("PROCESSOR_UNAVAILABLE", str(exc), details={"refund_id": refund.id}) from exc

    if outcome is None:
        if refund.status == RefundStatus.PROCESSING:
            _fail(db, refund, "No refund found at the processor", actor.ident)
            db.commit()
            db.refresh(refund)
            logger.warning("Refund never reached the processor", extra={"refund_id": refund.id})
        return refund

    apply_processor_refund(db, refund, outcome, actor=actor.ident)
    logger.info("Refund reconciled", extra={"refund_id": refund.id, "status": refund.status.value})
    return refund


def find_refund_for_processor(db: Session, outcome: ProcessorRefund) -> Refund | None:
    refund = db.scalar(select(Refund).where(Refund.processor_refund_id == outcome.id))
    if refund is not None:
        return refund
    raw_id = outcome.metadata.get("refund_id")
    if raw_id and raw_id.isdigit():
        return db.get(Refund, int(raw_id))
    return None


def list_refunds(db: Session, status: RefundStatus | None = None) -> list[Refund]:
    stmt = select(Refund).order_by(Refund.created_at.desc(), Refund.id.desc())
    if status is not None:
        stmt = stmt.where(Refund.status == status)
    return list(db.scalars(stmt))


def list_refunds_for_actor(db: Session, actor: Actor) -> list[Refund]:
    stmt = (
        select(Refund)
        .where(Refund.user_email == actor.email.lower())
        .order_by(Refund.created_at.desc(), Refund.id.desc())
    )
    return list(db.scalars(stmt))


__all__ = [
    "RECONCILABLE_STATUSES",
    "apply_processor_refund",
    "decide_refund",
    "find_refund_for_processor",
    "get_open_refund",
    "list_refunds",
    "list_refunds_for_actor",
    "reconcile_refund",
    "request_refund",
]
