"""Payment ledger queries for the admin dashboard and payers."""
import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.models.payment import Payment, PaymentStatus
from app.schemas.payment import MonthlyIncome, MonthlyIncomeReport
from app.security import Actor
from app.utils.audit import log_audit
from app.utils.errors import AuthzError
from app.utils.money import quantize_cents
from app.utils.time import ensure_utc

logger = logging.getLogger(__name__)


def list_payments(db: Session, status: PaymentStatus | None = None) -> list[Payment]:
    stmt = select(Payment).order_by(Payment.payment_date.desc(), Payment.id.desc())
    if status is not None:
        stmt = stmt.where(Payment.status == status)
    return list(db.scalars(stmt))


def list_payments_for_email(db: Session, email: str, actor: Actor) -> list[Payment]:
    """Payments made with ``email``; visible to that payer and to admins."""

    email = email.strip().lower()
    if not (actor.is_admin or actor.owns(email)):
        raise AuthzError("NOT_PAYMENT_OWNER", "You can only list your own payments.")
    stmt = (
        select(Payment)
        .where(Payment.email == email)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
    )
    return list(db.scalars(stmt))


def monthly_income(db: Session) -> MonthlyIncomeReport:
    """Group PAID payments by calendar month (UTC) and derive the dashboard KPIs."""

    rows = db.execute(
        select(Payment.payment_date, Payment.amount).where(Payment.status == PaymentStatus.PAID)
    ).all()

    totals: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    counts: dict[str, int] = defaultdict(int)
    for paid_at, amount in rows:
        month = ensure_utc(paid_at).strftime("%Y-%m")
        totals[month] += Decimal(amount)
        counts[month] += 1

    months = [
        MonthlyIncome(month=month, total=quantize_cents(totals[month]), count=counts[month])
        for month in sorted(totals)
    ]
    total = quantize_cents(sum(totals.values(), Decimal("0")))
    paid_count = len(rows)
    avg_ticket = quantize_cents(total / paid_count) if paid_count else Decimal("0.00")

    best = max(months, key=lambda row: row.total, default=None)
    logger.debug("Monthly income computed", extra={"months": len(months), "paid_count": paid_count})
    return MonthlyIncomeReport(
        months=months,
        total=total,
        paid_count=paid_count,
        avg_ticket=avg_ticket,
        best_month=best.month if best else None,
        best_total=best.total if best else Decimal("0.00"),
    )


def expire_pending_payment(db: Session, payment_id: int) -> bool:
    """PENDING -> FAILED after the hosted session expired unpaid. Returns True if it moved."""

    result = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
        .values(status=PaymentStatus.FAILED)
    )
    if result.rowcount != 1:
        db.rollback()
        return False
    log_audit(db, actor="processor", action="PAYMENT_EXPIRED", entity="Payment", entity_id=payment_id)
    db.commit()
    logger.info("Pending payment expired", extra={"payment_id": payment_id})
    return True


__all__ = ["expire_pending_payment", "list_payments", "list_payments_for_email", "monthly_income"]
