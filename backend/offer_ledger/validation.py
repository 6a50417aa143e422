from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from .exceptions import ValidationError
from .time_utils import parse_iso_datetime


# Maximum amount: 999,999,999,999.99
# Matches Numeric(14, 2) so nothing overflows the column
MAX_AMOUNT = Decimal("999999999999.99")
CENTS = Decimal("0.01")

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def parse_amount(value: Any, field: str, *, allow_zero: bool = False) -> Decimal:
    """
    Coerce a client-supplied amount to a 2-place Decimal.

    Accepts Decimal, int and numeric strings. Floats are routed through str()
    so 0.1 stays 0.1. Booleans, scientific notation and more than two
    decimal places are rejected.
    """
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be a number")
        # Reject scientific notation (e.g., "1e5", "2E3")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain decimal (scientific notation not allowed)")
        try:
            amount = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number")
    else:
        raise ValidationError(f"{field} must be a number")

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    if amount.as_tuple().exponent < -2:
        raise ValidationError(f"{field} cannot have more than 2 decimal places")

    if allow_zero:
        if amount < 0:
            raise ValidationError(f"{field} must be >= 0")
    elif amount <= 0:
        raise ValidationError(f"{field} must be > 0")

    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT:,}")

    return amount.quantize(CENTS)


def parse_currency(value: Any, field: str = "currency") -> str:
    """Normalize an ISO-4217 style currency code ("usd" -> "USD")."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    code = value.strip().upper()
    if not _CURRENCY_RE.match(code):
        raise ValidationError(f"{field} must be a 3-letter currency code")
    return code


def parse_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    allowed = sorted(choices)
    if not isinstance(value, str) or value.strip().lower() not in allowed:
        raise ValidationError(f"{field} must be one of: {', '.join(allowed)}")
    return value.strip().lower()


def require_text(value: Any, field: str, *, max_length: int | None = None) -> str:
    """Non-blank string, stripped, optionally length-capped."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    text = str(value).strip()
    if max_length and len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text


def optional_text(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None or not str(value).strip():
        return None
    return require_text(value, field, max_length=max_length)


def parse_datetime_field(value: Any, field: str) -> datetime | None:
    """Coerce to a UTC-naive datetime; aware values are converted to UTC first."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        try:
            return parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime")
    raise ValidationError(f"{field} must be a datetime")


def format_money(amount: Decimal | None) -> str | None:
    """Serialize an amount as a fixed 2-place string."""
    if amount is None:
        return None
    return str(Decimal(amount).quantize(CENTS))
