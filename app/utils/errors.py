"""Standardized error payloads and the service error taxonomy."""
from typing import Any

from fastapi import HTTPException, status


def error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    *,
    kind: str | None = None,
) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if kind:
        payload["error"]["kind"] = kind
    if details:
        payload["error"]["details"] = details
    return payload


class ServiceError(HTTPException):
    """Base class for failures raised by the payment and refund services.

    Each subclass names a machine-readable ``kind`` and a default HTTP status;
    the rendered body is the same envelope produced by :func:`error_response`.
    """

    kind = "ServiceError"
    default_status = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            status_code=status_code or self.default_status,
            detail=error_response(code, message, details, kind=self.kind),
        )
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(ServiceError):
    """Malformed or missing input; fixable by the caller."""

    kind = "ValidationError"
    default_status = status.HTTP_400_BAD_REQUEST


class AuthzError(ServiceError):
    kind = "AuthzError"
    default_status = status.HTTP_403_FORBIDDEN


class NotFound(ServiceError):
    kind = "NotFound"
    default_status = status.HTTP_404_NOT_FOUND


class ConflictError(ServiceError):
    """Request clashes with the current state of a record (duplicates, windows, transitions)."""

    kind = "ConflictError"
    default_status = status.HTTP_409_CONFLICT


class UpstreamError(ServiceError):
    """The payment processor or booking system failed or is unavailable."""

    kind = "UpstreamError"
    default_status = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "error_response",
    "ServiceError",
    "ValidationError",
    "AuthzError",
    "NotFound",
    "ConflictError",
    "UpstreamError",
]
