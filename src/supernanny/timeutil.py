"""Time parsing and formatting for baby-care events.

Supports:
- Event times as spoken: "10 a.m.", "10pm", "7:45 AM", "at 9"
- Strict 24-hour clock times: "14:30"
- Persisted ISO datetimes: "2024-01-01T14:30:00Z"
- Human time references for picking a timeline day: "yesterday", "3 days ago"
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, NamedTuple

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

if TYPE_CHECKING:
    from .models import RawExtractedEvent

logger = logging.getLogger(__name__)

# Digits, optional ":MM", optional meridiem written as am / a.m. / a. m. / AM
_TWELVE_HOUR_RE = re.compile(
    r"(?<!\d)(\d{1,2})(?::(\d{1,2}))?\s*(?:([ap])\.?\s*m\b\.?)?",
    re.IGNORECASE,
)
_TWENTY_FOUR_HOUR_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")


class ClockTime(NamedTuple):
    """A wall-clock time recognised in free text."""

    hour: int    # 0-23
    minute: int
    grammar: str  # "12h" or "24h"


def to_iso(dt: datetime) -> str:
    """Render a datetime as a UTC ISO-8601 string (the timeline sort key)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def format_time_label(dt: datetime) -> str:
    """Short clock label, e.g. "2:30 PM"."""
    period = "PM" if dt.hour >= 12 else "AM"
    hour12 = dt.hour % 12 or 12
    return f"{hour12}:{dt.minute:02d} {period}"


def format_duration(seconds: int) -> str:
    """Format an elapsed recording duration as MM:SS."""
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


def _parse_twelve_hour(text: str) -> ClockTime | None:
    match = _TWELVE_HOUR_RE.search(text)
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2)) if match.group(2) else 0
    meridiem = match.group(3)

    # Without a meridiem only a bare hour ("at 10") reads as 12-hour time;
    # "10:30" style strings belong to the 24-hour grammar.
    if meridiem is None and match.group(2) is not None:
        return None
    if not 1 <= hours <= 12 or minutes > 59:
        return None

    is_pm = meridiem is not None and meridiem.lower() == "p"
    hour24 = hours
    if is_pm and hours < 12:
        hour24 += 12
    if not is_pm and hours == 12:
        hour24 = 0

    return ClockTime(hour24, minutes, "12h")


def _parse_twenty_four_hour(text: str) -> ClockTime | None:
    match = _TWENTY_FOUR_HOUR_RE.match(text)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return ClockTime(hours, minutes, "24h")


def parse_clock_time(text: str) -> ClockTime | None:
    """Recognise a clock time in free text.

    Tries the loose 12-hour grammar first, then strict ``HH:MM``.

    Returns:
        ClockTime, or None when neither grammar matches.

    Examples:
        >>> parse_clock_time("10 a.m.")
        ClockTime(hour=10, minute=0, grammar='12h')

        >>> parse_clock_time("12 am")
        ClockTime(hour=0, minute=0, grammar='12h')

        >>> parse_clock_time("14:30")
        ClockTime(hour=14, minute=30, grammar='24h')
    """
    text = text.strip().lower()
    if not text:
        return None
    return _parse_twelve_hour(text) or _parse_twenty_four_hour(text)


def parse_start_time(value: str) -> datetime | None:
    """Parse a persisted ISO datetime. Naive values are taken as UTC.

    Returns None (and logs) instead of raising on garbage.
    """
    try:
        parsed = dateparser.parse(value)
    except (ValueError, OverflowError, dateparser.ParserError) as e:
        logger.warning(f"Cannot parse start_time {value!r}: {e}")
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_event_time(
    event: "RawExtractedEvent",
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
) -> tuple[str, str]:
    """Work out the sort timestamp and display label for an extracted event.

    Priority:
    1. ``metadata.original_time_string`` is the label, verbatim. The sort
       timestamp still comes from ``start_time`` when there is one, so the
       two may disagree.
    2. ``start_time`` gives both.
    3. ``metadata.event_time`` / ``event_time`` parsed as clock time on
       today's date.
    4. Current time.

    Never raises. Unparseable times fall back to ``now`` with a warning.

    Args:
        event: The extracted event
        now: Reference point (default: utcnow)
        tz: Timezone labels are rendered in and today's date is taken from

    Returns:
        (ISO-8601 UTC timestamp, non-empty label)
    """
    if now is None:
        now = datetime.now(timezone.utc)
    local_now = now.astimezone(tz)

    metadata = event.metadata
    original = metadata.original_time_string if metadata else None
    original = original.strip() if original else None
    start = parse_start_time(event.start_time) if event.start_time else None

    if original:
        return to_iso(start or local_now), original

    if start is not None:
        return to_iso(start), format_time_label(start.astimezone(tz))

    event_time = (metadata.event_time if metadata else None) or event.event_time
    if event_time:
        clock = parse_clock_time(event_time)
        if clock is not None:
            dt = local_now.replace(hour=clock.hour, minute=clock.minute, second=0, microsecond=0)
            return to_iso(dt), format_time_label(dt)
        logger.warning(f"Unrecognized event time {event_time!r}, using current time")

    return to_iso(local_now), format_time_label(local_now)


def day_bounds(day: date, tz: tzinfo = timezone.utc) -> tuple[datetime, datetime]:
    """First and last instant of ``day`` in ``tz``, as aware datetimes."""
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start, end


def parse_time_reference(ref: str, now: datetime | None = None) -> datetime:
    """Parse human-friendly time references.

    Args:
        ref: Time reference string
        now: Reference point for relative times (default: utcnow). Its
            timezone also anchors dates parsed without one.

    Returns:
        Parsed timezone-aware datetime

    Raises:
        ValueError: If the reference cannot be parsed

    Examples:
        >>> parse_time_reference("2025-01-15")
        datetime(2025, 1, 15, 0, 0, tzinfo=timezone.utc)

        >>> parse_time_reference("yesterday")
        datetime(...)
    """
    if now is None:
        now = datetime.now(timezone.utc)

    ref = ref.strip().lower()

    if ref == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if ref == "yesterday":
        return (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    if ref == "last week":
        return now - timedelta(weeks=1)
    if ref == "last month":
        return now - relativedelta(months=1)

    ago_match = re.match(r"(\d+)\s*(hour|day|week|month)s?\s*ago", ref)
    if ago_match:
        amount = int(ago_match.group(1))
        unit = ago_match.group(2)

        if unit == "hour":
            return now - timedelta(hours=amount)
        elif unit == "day":
            return now - timedelta(days=amount)
        elif unit == "week":
            return now - timedelta(weeks=amount)
        elif unit == "month":
            return now - relativedelta(months=amount)

    try:
        parsed = dateparser.parse(ref)
        if parsed is None:
            raise ValueError(f"Cannot parse time reference: {ref}")

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=now.tzinfo or timezone.utc)

        return parsed
    except (ValueError, OverflowError, dateparser.ParserError) as e:
        raise ValueError(f"Cannot parse time reference: {ref}") from e
