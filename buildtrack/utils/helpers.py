"""Shared utility functions.

utcnow / as_utc:  timezone-aware timestamps (SQLite hands back naive values)
parse_datetime:   lenient ISO parsing for request payloads
iso:              None-safe isoformat for to_dict()
round_half_up:    fixed-decimal rounding for display metrics
"""
import logging
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime.

    Naive datetimes are assumed to already be UTC. Plain dates map to
    midnight UTC. None passes through.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def parse_datetime(value):
    """Parse an ISO date or datetime string to an aware UTC datetime.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, (date, datetime)):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.debug("Unparseable datetime value %r", value)
        return None


def iso(value):
    """isoformat() for aware timestamps, None-safe."""
    if value is None:
        return None
    return as_utc(value).isoformat()


def round_half_up(value: float, places: int = 1) -> float:
    """Round like a ledger does (2.25 -> 2.3), not banker's rounding."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))
