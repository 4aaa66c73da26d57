"""Refund request model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class RefundStatus(str, enum.Enum):
    """Refund lifecycle: REQUESTED -> PROCESSING -> REFUNDED | APPROVED; REQUESTED -> DENIED; PROCESSING -> FAILED."""

    REQUESTED = "REQUESTED"
    PROCESSING = "PROCESSING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class RefundReason(str, enum.Enum):
    ACCIDENTAL_PAYMENT = "ACCIDENTAL_PAYMENT"
    SERVICE_ISSUE = "SERVICE_ISSUE"
    DUPLICATE_CHARGE = "DUPLICATE_CHARGE"
    OTHER = "OTHER"


OPEN_REFUND_STATUSES = (RefundStatus.REQUESTED, RefundStatus.PROCESSING, RefundStatus.APPROVED)

_OPEN_STATUS_SQL = "status IN ('REQUESTED', 'PROCESSING', 'APPROVED')"


class Refund(Base):
    """A request to reverse all or part of a paid payment."""

    __tablename__ = "refunds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("policy_window_days > 0", name="positive_policy_window"),
        Index("ix_refunds_status", "status"),
        Index("ix_refunds_user_email", "user_email"),
        Index(
            "uq_refunds_open_per_payment",
            "payment_id",
            unique=True,
            sqlite_where=text(_OPEN_STATUS_SQL),
            postgresql_where=text(_OPEN_STATUS_SQL),
        ),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reason: Mapped[RefundReason] = mapped_column(SqlEnum(RefundReason, name="refundreason"), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[RefundStatus] = mapped_column(
        SqlEnum(RefundStatus, name="refundstatus"), nullable=False, default=RefundStatus.REQUESTED
    )
    policy_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    processor_refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    decision_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    payment = relationship("Payment", back_populates="refunds")

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REFUND_STATUSES
