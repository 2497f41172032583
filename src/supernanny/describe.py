"""Short descriptions and timeline records for extracted events.

Provides:
- synthesize_description(): One-line text from event type and metrics
- format_sleep_duration(): "1 hour 20 minutes" style durations
- to_display_event(): RawExtractedEvent -> DisplayTimelineEvent
"""

from datetime import datetime, timezone, tzinfo

from pydantic import BaseModel

from .constants import DEFAULT_FEEDING_UNIT, MINUTES_PER_HOUR
from .models import (
    DiaperMetrics,
    DisplayTimelineEvent,
    FeedingMetrics,
    RawExtractedEvent,
    SleepMetrics,
    generate_id,
    parse_metrics,
)
from .timeutil import resolve_event_time


def format_sleep_duration(minutes: int | float) -> str:
    """Render a duration in minutes as hours and minutes.

    Examples:
        >>> format_sleep_duration(80)
        '1 hour 20 minutes'
        >>> format_sleep_duration(120)
        '2 hours'
        >>> format_sleep_duration(45)
        '45 minutes'
    """
    total = int(minutes)
    hours, mins = divmod(total, MINUTES_PER_HOUR)

    if hours == 0:
        return f"{mins} minutes"

    text = f"{hours} hour{'s' if hours > 1 else ''}"
    if mins > 0:
        text += f" {mins} minutes"
    return text


def _format_amount(metrics: FeedingMetrics) -> str:
    amount = metrics.amount
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return str(amount)
    if isinstance(amount, float) and amount.is_integer():
        amount = int(amount)
    return f"{amount}{metrics.unit or DEFAULT_FEEDING_UNIT}"


def synthesize_description(
    event_type: str,
    metrics: BaseModel | dict | None = None,
    summary: str | None = None,
) -> str:
    """Describe an event in one short line.

    An extractor-provided ``summary`` always wins. Otherwise the text is built
    from the type-specific metrics. Always returns a non-empty string.
    """
    if summary:
        return summary

    metrics = parse_metrics(event_type, metrics)

    if event_type == "feeding":
        if isinstance(metrics, FeedingMetrics) and metrics.amount:
            return f"Bottle feeding, {_format_amount(metrics)} formula"
        return "Feeding time"

    if event_type == "sleep":
        if isinstance(metrics, SleepMetrics) and metrics.duration:
            return f"Nap time, slept for {format_sleep_duration(metrics.duration)}"
        return "Sleep time"

    if event_type == "diaper":
        if isinstance(metrics, DiaperMetrics) and metrics.diaper_type:
            return f"{metrics.diaper_type} diaper, changed"
        return "Diaper change"

    if event_type == "milestone":
        return "New milestone"

    return f"{event_type or 'Unknown'} event"


def to_display_event(
    event: RawExtractedEvent,
    now: datetime | None = None,
    tz: tzinfo = timezone.utc,
    mark_new: bool = True,
) -> DisplayTimelineEvent:
    """Build the timeline record for an extracted event.

    Fresh events are marked ``is_new`` so the timeline highlights them once.
    """
    timestamp, label = resolve_event_time(event, now=now, tz=tz)
    description = synthesize_description(event.event_type, event.metrics, event.summary)

    snippet = event.text_snippet
    if not snippet and event.metadata is not None:
        snippet = event.metadata.text_snippet

    return DisplayTimelineEvent(
        id=event.id or generate_id(),
        type=event.event_type,
        time=label,
        timestamp=timestamp,
        description=description,
        full_narrative=snippet or None,
        is_new=mark_new,
    )
