"""Helper utilities for the Aid Claims service"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Amount columns are Numeric(14, 2)
MAX_MONEY = Decimal("1000000000000")


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (all stored timestamps are naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already"""
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 rendering with an explicit Z suffix"""
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat(timespec="milliseconds") + "Z"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    return phone.strip()


def parse_money(value: Any, max_places: int = 2) -> Optional[Decimal]:
    """
    Parse a monetary amount into an exact Decimal.

    Returns None when the value is not a finite, non-negative number below
    MAX_MONEY with at most ``max_places`` decimal places. Floats are converted
    through ``str`` so that 100.5 becomes Decimal("100.5") rather than its
    binary expansion.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None

    if not amount.is_finite() or amount < 0 or amount >= MAX_MONEY:
        return None
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -max_places:
        return None
    return amount


def compact_metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None values so audit metadata stays readable"""
    return {key: value for key, value in data.items() if value is not None}
