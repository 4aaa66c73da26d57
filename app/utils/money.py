"""Money helpers: decimal normalisation and settlement-currency conversion."""
from __future__ import annotations

import enum
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CENT = Decimal("0.01")


class Currency(str, enum.Enum):
    """Currencies accepted at checkout. USD is the settlement currency."""

    USD = "USD"
    LKR = "LKR"


SETTLEMENT_CURRENCY = Currency.USD


def to_decimal(value: Any) -> Decimal:
    """Convert ``value`` to ``Decimal`` without float artefacts.

    Raises ``ValueError`` for anything that is not a finite number.
    """

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError) as exc:
            raise ValueError(f"Invalid money amount: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return result


def quantize_cents(value: Any) -> Decimal:
    """Round to two decimals, half away from zero."""

    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_settlement(amount: Any, currency: Currency, rate: Decimal) -> Decimal:
    """Convert ``amount`` expressed in ``currency`` to the settlement currency.

    Amounts already in the settlement currency are only rounded; any other
    currency is multiplied by ``rate`` exactly once and then rounded.
    """

    if currency == SETTLEMENT_CURRENCY:
        return quantize_cents(amount)
    return quantize_cents(to_decimal(amount) * to_decimal(rate))


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount to the smallest unit expected by Stripe."""

    return int((quantize_cents(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(value) / Decimal("100")).quantize(CENT)


__all__ = [
    "CENT",
    "Currency",
    "SETTLEMENT_CURRENCY",
    "from_minor_units",
    "quantize_cents",
    "to_decimal",
    "to_minor_units",
    "to_settlement",
]
