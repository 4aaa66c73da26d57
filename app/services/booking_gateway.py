"""HTTP client forwarding paid booking payloads to the resort booking system."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class BookingForwardError(RuntimeError):
    """The booking system could not be reached or refused the booking."""


class BookingSystemClient:
    """Posts booking payloads to ``<BOOKING_SERVICE_URL>/bookings`` with a bounded timeout."""

    def __init__(self, base_url: str, *, timeout: float, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "BookingSystemClient":
        return cls(settings.BOOKING_SERVICE_URL, timeout=settings.BOOKING_SERVICE_TIMEOUT_SECONDS)

    def create_booking(self, booking_data: dict[str, Any]) -> None:
        """Create the booking. Any 2xx reply counts as created; its body is not read."""

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(f"{self.base_url}/bookings", json=booking_data)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BookingForwardError(
                f"Booking system answered {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise BookingForwardError(f"Booking system unreachable: {type(exc).__name__}") from exc

        logger.info("Booking forwarded", extra={"status_code": response.status_code})


def get_booking_client() -> BookingSystemClient:
    """FastAPI dependency returning the booking-system client."""

    return BookingSystemClient.from_settings(get_settings())


__all__ = ["BookingForwardError", "BookingSystemClient", "get_booking_client"]
