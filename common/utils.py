#!/usr/bin/env python3
"""
Tiris Backend
Utility Functions

Small helpers shared across packages: time handling, identifiers and
decimal conversion.
"""

import uuid
import datetime
from decimal import Decimal
from typing import Optional, Union


def utc_now() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite drops timezone information on round trip, so values read back
    from it are naive; they are always stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)


def to_rfc3339(value: Optional[datetime.datetime]) -> Optional[str]:
    """Format a datetime as an RFC 3339 string in UTC."""
    value = ensure_utc(value)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def generate_uuid() -> uuid.UUID:
    """Generate a random identifier."""
    return uuid.uuid4()


def parse_uuid(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    """Parse a UUID, returning None for anything that is not one."""
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Convert a wire number to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def to_money(value, scale: int = 8) -> Decimal:
    """Convert to Decimal rounded to ``scale`` fractional digits."""
    return to_decimal(value).quantize(Decimal(1).scaleb(-scale))
