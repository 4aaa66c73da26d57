"""Payment ledger endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.payment import PaymentStatus
from app.schemas.payment import MonthlyIncomeReport, PaymentRead
from app.security import Actor, require_scope
from app.services import payments as payments_service

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=list[PaymentRead])
def list_payments(
    status: PaymentStatus | None = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
):
    """All payments, newest first."""

    return payments_service.list_payments(db, status=status)


@router.get("/income/monthly", response_model=MonthlyIncomeReport)
def monthly_income(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.admin})),
):
    return payments_service.monthly_income(db)


@router.get("/user/{email}", response_model=list[PaymentRead])
def list_user_payments(
    email: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_scope({ApiScope.user})),
):
    return payments_service.list_payments_for_email(db, email, actor)
