"""Refund request and decision endpoints."""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.refund import RefundStatus
from app.schemas.refund import RefundCreate, RefundDecision, RefundRead
from app.security import Actor, require_scope
from app.services import refunds as refunds_service
from app.services.psp_stripe import StripeClient, get_payment_processor

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.post("", response_model=RefundRead, status_code=status.HTTP_201_CREATED)
def request_refund(
    payload: RefundCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.user})),
):
    """Open a refund request for one of the caller's payments."""

    return refunds_service.request_refund(db, payload, actor)


@router.get("/mine", response_model=list[RefundRead])
def my_refunds(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.user})),
):
    return refunds_service.list_refunds_for_actor(db, actor)


@router.get("", response_model=list[RefundRead])
def list_refunds(
    status: RefundStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
):
    return refunds_service.list_refunds(db, status=status)


@router.patch("/{refund_id}", response_model=RefundRead)
def decide_refund(
    refund_id: int,
    decision: RefundDecision,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
    processor: StripeClient = Depends(get_payment_processor),
):
    """Approve (refunding through Stripe) or deny a pending request."""

    return refunds_service.decide_refund(db, refund_id, decision, actor, processor)


@router.post("/{refund_id}/reconcile", response_model=RefundRead)
def reconcile_refund(
    refund_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
    processor: StripeClient = Depends(get_payment_processor),
):
    return refunds_service.reconcile_refund(db, refund_id, processor, actor)
