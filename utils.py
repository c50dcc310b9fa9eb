"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
from datetime import timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

logger = logging.getLogger(__name__)

Q2 = Decimal("0.01")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(day: datetime.date) -> datetime.datetime:
    return datetime.datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def add_months(value: datetime.datetime, months: int) -> datetime.datetime:
    """Advance *value* by calendar months, clamping the day to the month end.

    ``2026-01-31 + 1 month`` -> ``2026-02-28``.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def ceil_days(delta: datetime.timedelta) -> int:
    """Whole days in *delta*, rounding any partial day up."""
    seconds = delta.total_seconds()
    days = int(seconds // 86400)
    if seconds % 86400:
        days += 1
    return days


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def parse_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 date or datetime string into an aware UTC datetime."""
    if not raw:
        return None
    try:
        value = datetime.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None
    return as_utc(value)


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------

def to_decimal(value, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Convert *value* to ``Decimal`` via ``str`` so floats keep their printed form."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal, using default %s", value, default)
        return default


def money(value) -> Decimal:
    """Quantise to cents with ``ROUND_HALF_UP``."""
    return (to_decimal(value, Decimal("0"))).quantize(Q2, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def parse_int_list(raw, default: tuple[int, ...] = ()) -> tuple[int, ...]:
    """Parse ``"30,14,7"`` or ``[30, 14, 7]`` into a tuple of ints."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    try:
        return tuple(int(item) for item in raw)
    except (ValueError, TypeError):
        logger.warning("Could not parse integer list %r, using default %s", raw, default)
        return default


def parse_bool(raw, default: bool = False) -> bool:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("true", "1", "yes")
