"""Time helpers. All stored timestamps are UTC and "today" is the UTC calendar day."""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union

from dateutil import parser as date_parser

from .logging import get_logger

logger = get_logger(__name__)


def now_utc() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def today_utc() -> date:
    return now_utc().date()


def to_utc(dt: datetime) -> datetime:
    """
    Convert datetime to UTC timezone.

    Naive datetimes are assumed to already be UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a feed timestamp in any common format.

    Args:
        value: String (RFC 2822, ISO 8601, ...) or datetime

    Returns:
        UTC datetime, or None if the value is empty or unparseable
    """
    if not value:
        return None

    if isinstance(value, datetime):
        return to_utc(value)

    try:
        return to_utc(date_parser.parse(value))
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(f"Failed to parse datetime '{value}': {e}")
        return None


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Half open UTC range [00:00, next day 00:00) covering a calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)
