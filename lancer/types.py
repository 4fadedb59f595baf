"""
Shared helpers for lancer records.

Timestamps are stored as ISO-8601 strings in UTC; amounts are Decimal in
USDC and stored as TEXT so no precision is lost in SQLite.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

USDC_DECIMALS = 6


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse ISO datetime string.

    Returns None for empty or unparseable input unless ``strict`` is set, in
    which case a ParseDatetimeError is raised.
    """
    if not s:
        return None
    if isinstance(s, datetime):
        return s
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        if strict:
            raise ParseDatetimeError(s, exc) from exc
        return None
    if parsed.tzinfo is None:
        # SQLite CURRENT_TIMESTAMP values are naive UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_decimal(value: Any) -> Decimal:
    """Coerce a stored or user-supplied amount to Decimal."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def usdc_to_base_units(amount: Decimal) -> int:
    """Convert a USDC amount to integer base units (6 decimals)."""
    return int(to_decimal(amount) * Decimal(10**USDC_DECIMALS))
