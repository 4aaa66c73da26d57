"""Processed Stripe webhook events, kept for replay protection."""
from datetime import datetime

from sqlalchemy import DateTime, JSON, String, UniqueConstraint, func, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PSPWebhookEvent(Base):
    """An incoming processor webhook event, recorded once per (provider, event_id)."""

    __tablename__ = "psp_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "event_id",
            name="uq_psp_webhook_events_provider_event_id",
        ),
        Index("ix_psp_webhook_events_kind", "kind"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="stripe")
    event_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(100), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
