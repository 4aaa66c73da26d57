"""Payment ledger model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, _utcnow


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


SETTLED_STATUSES = (PaymentStatus.PAID, PaymentStatus.REFUNDED)


class Payment(Base):
    """One purchase attempt: who paid, how much, for what, and how it settled."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "(transaction_id IS NOT NULL AND status IN ('PAID', 'REFUNDED'))"
            " OR (transaction_id IS NULL AND status IN ('PENDING', 'FAILED'))",
            name="transaction_matches_status",
        ),
        Index("ix_payments_status", "status"),
        Index("ix_payments_email", "email"),
        Index("ix_payments_payment_date", "payment_date"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    package_type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus, name="paymentstatus"), nullable=False, default=PaymentStatus.PENDING
    )
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    processor_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    refunds = relationship("Refund", back_populates="payment", order_by="Refund.created_at")
