"""Time utilities."""
from datetime import UTC, datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; those are stored in UTC, so they are tagged rather than shifted.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_since(value: datetime, *, now: datetime | None = None) -> float:
    """Return the elapsed time since ``value`` in (fractional) days."""

    reference = ensure_utc(now) if now is not None else utcnow()
    return (reference - ensure_utc(value)).total_seconds() / 86400


__all__ = ["utcnow", "ensure_utc", "days_since"]
