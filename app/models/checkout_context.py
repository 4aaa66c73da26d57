"""Checkout context: the one-time envelope handed from booking/cart to payment."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class ContextType(str, enum.Enum):
    BOOKING = "BOOKING"
    CART = "CART"


class ContextStatus(str, enum.Enum):
    INIT = "INIT"
    PAID = "PAID"


class CheckoutContext(Base):
    """Token-addressed payload correlating a pending payment with its booking or cart."""

    __tablename__ = "checkout_contexts"
    __table_args__ = (
        Index("ix_checkout_contexts_status", "status"),
        Index("ix_checkout_contexts_payment_id", "payment_id"),
    )

    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    type: Mapped[ContextType] = mapped_column(
        SqlEnum(ContextType, name="contexttype"), nullable=False, default=ContextType.BOOKING
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    package_type: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    booking_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    cart: Mapped[list | None] = mapped_column(JSON, nullable=True)
    status: Mapped[ContextStatus] = mapped_column(
        SqlEnum(ContextStatus, name="contextstatus"), nullable=False, default=ContextStatus.INIT
    )
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True)
    booking_forwarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    forward_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Set while a forward is in flight; stale values past the lease may be taken over.
    forward_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment")

    @property
    def awaiting_forward(self) -> bool:
        """True for a consumed booking context whose payload never reached the booking system."""

        return (
            self.type == ContextType.BOOKING
            and self.status == ContextStatus.PAID
            and self.booking_forwarded_at is None
        )
