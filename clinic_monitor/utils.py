"""
Utility functions shared across the service.
"""

import re
from datetime import datetime, timezone

_NON_DIGITS = re.compile(r"\D")


def digits_only(value: str) -> str:
    """Strip everything but digits from a phone-like string."""
    return _NON_DIGITS.sub("", value or "")


def phones_match(a: str, b: str) -> bool:
    """
    Fuzzy phone comparison: digits-only containment in either direction.

    Tolerates country-code and leading-zero differences. Empty values never
    match.
    """
    da, db = digits_only(a), digits_only(b)
    if not da or not db:
        return False
    return da in db or db in da


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)
