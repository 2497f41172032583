"""Tests for description synthesis and display event construction."""

from datetime import datetime, timezone

import pytest

from supernanny.describe import format_sleep_duration, synthesize_description, to_display_event
from supernanny.models import RawExtractedEvent

NOW = datetime(2024, 1, 1, 18, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("minutes,expected", [
    (45, "45 minutes"),
    (60, "1 hour"),
    (80, "1 hour 20 minutes"),
    (120, "2 hours"),
    (135, "2 hours 15 minutes"),
    (90.0, "1 hour 30 minutes"),
])
def test_format_sleep_duration(minutes, expected):
    """Test hour and minute clauses."""
    assert format_sleep_duration(minutes) == expected


def test_summary_wins():
    """Test that an extractor summary is returned unchanged."""
    text = synthesize_description("feeding", {"amount": 4}, summary="Fed Ada after her bath")
    assert text == "Fed Ada after her bath"


def test_feeding_with_amount():
    """Test feeding text contains the amount and 'formula'."""
    text = synthesize_description("feeding", {"amount": 4})
    assert "4" in text
    assert "formula" in text


def test_feeding_with_unit():
    """Test numeric amounts carry their unit."""
    assert synthesize_description("feeding", {"amount": 120, "unit": "ml"}) == "Bottle feeding, 120ml formula"
    assert synthesize_description("feeding", {"amount": 4.0, "unit": "oz"}) == "Bottle feeding, 4oz formula"


def test_feeding_with_text_amount():
    """Test that a non-numeric amount is used as is."""
    assert synthesize_description("feeding", {"amount": "half a bottle"}) == "Bottle feeding, half a bottle formula"


def test_feeding_without_amount():
    assert synthesize_description("feeding", {}) == "Feeding time"
    assert synthesize_description("feeding") == "Feeding time"


def test_feeding_with_zero_amount():
    """Test that a zero amount is treated as no amount."""
    assert synthesize_description("feeding", {"amount": 0, "unit": "ml"}) == "Feeding time"
    assert synthesize_description("feeding", {"amount": ""}) == "Feeding time"


def test_sleep():
    """Test sleep text with and without a duration."""
    text = synthesize_description("sleep", {"duration": 80})
    assert text == "Nap time, slept for 1 hour 20 minutes"
    assert synthesize_description("sleep", {}) == "Sleep time"


def test_diaper():
    """Test diaper text keeps the type as given."""
    assert synthesize_description("diaper", {"diaper_type": "wet"}) == "wet diaper, changed"
    assert synthesize_description("diaper", {}) == "Diaper change"


def test_milestone_and_other_types():
    """Test fixed and generic texts for the remaining types."""
    assert synthesize_description("milestone", {"what": "first smile"}) == "New milestone"
    assert synthesize_description("bath", {}) == "bath event"
    assert synthesize_description("note") == "note event"


def test_to_display_event():
    """Test the full conversion of an extracted event."""
    event = RawExtractedEvent(
        id="e1",
        event_type="feeding",
        event_time="10 a.m.",
        metrics={"amount": 120, "unit": "ml"},
        text_snippet="she had 120 ml at 10 a.m.",
    )
    display = to_display_event(event, now=NOW)

    assert display.id == "e1"
    assert display.type == "feeding"
    assert display.time == "10:00 AM"
    assert display.timestamp == "2024-01-01T10:00:00+00:00"
    assert display.description == "Bottle feeding, 120ml formula"
    assert display.full_narrative == "she had 120 ml at 10 a.m."
    assert display.has_details is True
    assert display.is_new is True


def test_to_display_event_generates_id():
    """Test that id-less events get a fresh unique id."""
    event = RawExtractedEvent(event_type="sleep", metrics={"duration": 30})
    first = to_display_event(event, now=NOW)
    second = to_display_event(event, now=NOW)
    assert first.id
    assert first.id != second.id


def test_to_display_event_narrative_from_metadata():
    """Test that the metadata snippet is used when the event has none."""
    event = RawExtractedEvent(event_type="diaper", metadata={"text_snippet": "changed a wet one"})
    display = to_display_event(event, now=NOW)
    assert display.full_narrative == "changed a wet one"
    assert display.has_details is True


def test_to_display_event_without_narrative():
    """Test hasDetails is false without a narrative."""
    display = to_display_event(RawExtractedEvent(event_type="milestone"), now=NOW, mark_new=False)
    assert display.full_narrative is None
    assert display.has_details is False
    assert display.is_new is False


def test_unrenderable_type_still_converts():
    """Test that types the timeline cannot draw still produce a record."""
    display = to_display_event(RawExtractedEvent(event_type="measurement", metrics={"weight": 4.2}), now=NOW)
    assert display.description == "measurement event"
    assert display.is_renderable is False
