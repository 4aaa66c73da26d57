"""Stripe SDK wrapper for hosted checkout sessions and refunds."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import stripe

from app.config import Settings, get_settings
from app.utils.errors import UpstreamError
from app.utils.money import from_minor_units, to_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    """One line of a hosted checkout page, priced in the settlement currency."""

    name: str
    unit_amount: Decimal
    quantity: int = 1


@dataclass
class ProcessorSession:
    id: str
    url: str | None
    payment_status: str
    payment_intent_id: str | None = None
    status: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class ProcessorRefund:
    id: str
    status: str
    amount: Decimal | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class ProcessorError(RuntimeError):
    """The processor rejected a call or could not be reached."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


def _plain(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _object_id(value: Any) -> str | None:
    """Return the id of an expandable field that may be a string or an expanded object."""

    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _to_session(session: Any) -> ProcessorSession:
    return ProcessorSession(
        id=session.id,
        url=getattr(session, "url", None),
        payment_status=getattr(session, "payment_status", None) or "unpaid",
        payment_intent_id=_object_id(getattr(session, "payment_intent", None)),
        status=getattr(session, "status", None),
        metadata={k: str(v) for k, v in _plain(getattr(session, "metadata", None)).items()},
    )


def _to_refund(refund: Any) -> ProcessorRefund:
    amount = getattr(refund, "amount", None)
    return ProcessorRefund(
        id=refund.id,
        status=getattr(refund, "status", None) or "pending",
        amount=from_minor_units(amount) if amount is not None else None,
        metadata={k: str(v) for k, v in _plain(getattr(refund, "metadata", None)).items()},
    )


def refund_from_payload(data: dict[str, Any]) -> ProcessorRefund:
    """Build a :class:`ProcessorRefund` from a webhook event object."""

    amount = data.get("amount")
    return ProcessorRefund(
        id=data["id"],
        status=data.get("status") or "pending",
        amount=from_minor_units(amount) if amount is not None else None,
        metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
    )


def _wrap_stripe_error(action: str, exc: Exception) -> ProcessorError:
    transient = isinstance(exc, stripe.APIConnectionError)
    logger.warning(
        "Stripe call failed",
        extra={"action": action, "error_type": type(exc).__name__, "transient": transient},
    )
    return ProcessorError(f"Stripe {action} failed: {getattr(exc, 'user_message', None) or exc}", transient=transient)


class StripeClient:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    def __init__(self, settings: Settings) -> None:
        """Initialise the client, API key and network bounds."""

        self.settings = settings
        self._ensure_enabled()
        self._secret_key = settings.STRIPE_SECRET_KEY
        self._webhook_secret = settings.STRIPE_WEBHOOK_SECRET
        self.currency = settings.SETTLEMENT_CURRENCY.lower()

        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        stripe.default_http_client = stripe.new_default_http_client(timeout=settings.STRIPE_TIMEOUT_SECONDS)

    @classmethod
    def from_env(cls) -> "StripeClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    def _ensure_enabled(self) -> None:
        if not self.settings.STRIPE_ENABLED:
            raise RuntimeError("Stripe integration is disabled; enable STRIPE_ENABLED to proceed.")

    def create_checkout_session(
        self,
        *,
        customer_email: str,
        line_items: list[LineItem],
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> ProcessorSession:
        """Create a hosted Checkout Session; Stripe totals the line items itself."""

        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                customer_email=customer_email,
                locale="en",
                metadata=metadata,
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "product_data": {"name": item.name},
                            "unit_amount": to_minor_units(item.unit_amount),
                        },
                        "quantity": item.quantity,
                    }
                    for item in line_items
                ],
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            raise _wrap_stripe_error("checkout.session.create", exc) from exc
        return _to_session(session)

    def retrieve_checkout_session(self, session_id: str) -> ProcessorSession | None:
        """Return the session, or ``None`` when Stripe does not know the id."""

        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return None
            raise _wrap_stripe_error("checkout.session.retrieve", exc) from exc
        except stripe.StripeError as exc:
            raise _wrap_stripe_error("checkout.session.retrieve", exc) from exc
        return _to_session(session)

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount: Decimal,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorRefund:
        """Refund ``amount`` (major units) of a PaymentIntent, collapsing retries on ``idempotency_key``."""

        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=to_minor_units(amount),
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise _wrap_stripe_error("refund.create", exc) from exc
        return _to_refund(refund)

    def retrieve_refund(self, refund_id: str) -> ProcessorRefund:
        try:
            refund = stripe.Refund.retrieve(refund_id)
        except stripe.StripeError as exc:
            raise _wrap_stripe_error("refund.retrieve", exc) from exc
        return _to_refund(refund)

    def list_refunds(self, payment_intent_id: str) -> list[ProcessorRefund]:
        """List the refunds Stripe holds for a PaymentIntent."""

        try:
            page = stripe.Refund.list(payment_intent=payment_intent_id, limit=100)
        except stripe.StripeError as exc:
            raise _wrap_stripe_error("refund.list", exc) from exc
        return [_to_refund(refund) for refund in page.auto_paging_iter()]

    def construct_webhook_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify the signature and return the event as plain JSON.

        Raises ``stripe.SignatureVerificationError`` for a bad signature and
        ``ValueError`` for a body that is not JSON.
        """

        if not self._webhook_secret:
            raise RuntimeError(
                "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET for verification."
            )

        stripe.Webhook.construct_event(payload, sig_header, self._webhook_secret)
        return json.loads(payload)


def get_payment_processor() -> StripeClient:
    """FastAPI dependency returning the configured processor client."""

    try:
        return StripeClient.from_env()
    except RuntimeError as exc:
        logger.error("Payment processor unavailable", exc_info=True)
        raise UpstreamError("PROCESSOR_UNAVAILABLE", str(exc), status_code=503) from exc


__all__ = [
    "LineItem",
    "ProcessorError",
    "ProcessorRefund",
    "ProcessorSession",
    "StripeClient",
    "get_payment_processor",
    "refund_from_payload",
]
