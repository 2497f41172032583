"""Tests for the local store, timeline cache and new-event highlighting."""

import asyncio
import json
import sqlite3
from datetime import date
from unittest.mock import patch
from zoneinfo import ZoneInfo

from supernanny.cache import LocalStore, NewEventHighlighter, TimelineCache, merge_events
from supernanny.constants import TIMELINE_CACHE_KEY
from supernanny.models import DisplayTimelineEvent


def make_event(event_id, timestamp="2024-01-01T10:00:00+00:00", description="Feeding time", **kwargs):
    return DisplayTimelineEvent(
        id=event_id,
        type=kwargs.pop("type", "feeding"),
        time=kwargs.pop("time", "10:00 AM"),
        timestamp=timestamp,
        description=description,
        **kwargs,
    )


# ─────────────────────────────────────────────────────────────────────────────
# LocalStore
# ─────────────────────────────────────────────────────────────────────────────


def test_store_set_get_delete(store):
    """Test basic key-value operations."""
    assert store.get("missing") is None
    store.set("k", "v1")
    store.set("k", "v2")
    assert store.get("k") == "v2"
    store.delete("k")
    assert store.get("k") is None


def test_store_persists_across_reopen(temp_home):
    """Test that values survive closing and reopening the file."""
    path = temp_home / "nested" / "supernanny.db"
    first = LocalStore(path)
    first.set("k", "v")
    first.close()

    second = LocalStore(path)
    assert second.get("k") == "v"
    second.close()


# ─────────────────────────────────────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────────────────────────────────────


def test_merge_new_first_and_wins():
    """Test that new events are prepended and replace stale copies."""
    existing = [make_event("a", description="old a"), make_event("b")]
    new = [make_event("a", description="new a"), make_event("c")]

    merged = merge_events(new, existing)

    assert [e.id for e in merged] == ["a", "c", "b"]
    assert merged[0].description == "new a"


def test_merge_dedups_within_batch():
    merged = merge_events([make_event("a"), make_event("a", description="dup")], [])
    assert len(merged) == 1
    assert merged[0].description == "Feeding time"


def test_merge_idempotent():
    """Test that merging the same batch twice changes nothing."""
    batch = [make_event("a"), make_event("b")]
    once = merge_events(batch, [make_event("c")])
    twice = merge_events(batch, once)
    assert [e.id for e in twice] == [e.id for e in once]


# ─────────────────────────────────────────────────────────────────────────────
# TimelineCache
# ─────────────────────────────────────────────────────────────────────────────


def test_cache_empty(cache):
    assert cache.load() == []


def test_cache_merge_and_reload(cache):
    """Test merge persists and reloaded events are not new."""
    cache.merge([make_event("a", is_new=True)])
    cache.merge([make_event("b", is_new=True)])

    loaded = cache.load()
    assert [e.id for e in loaded] == ["b", "a"]
    assert all(e.is_new is False for e in loaded)


def test_cache_uses_camel_case_blob(cache, store):
    """Test the stored blob layout."""
    cache.save([make_event("a", full_narrative="had a bottle")])
    blob = json.loads(store.get(TIMELINE_CACHE_KEY))
    assert blob[0]["fullNarrative"] == "had a bottle"
    assert blob[0]["hasDetails"] is True


def test_cache_corrupt_blob(cache, store):
    """Test that unparseable cache data yields an empty list."""
    store.set(TIMELINE_CACHE_KEY, "{not json")
    assert cache.load() == []


def test_cache_non_list_blob(cache, store):
    store.set(TIMELINE_CACHE_KEY, json.dumps({"id": "a"}))
    assert cache.load() == []


def test_cache_skips_malformed_entries(cache, store):
    """Test that one bad entry does not lose the rest."""
    good = make_event("a").to_cache_dict()
    store.set(TIMELINE_CACHE_KEY, json.dumps([good, {"id": "b"}, "junk"]))
    loaded = cache.load()
    assert [e.id for e in loaded] == ["a"]


def test_cache_merge_over_corrupt_blob(cache, store):
    """Test that a merge recovers a corrupt cache."""
    store.set(TIMELINE_CACHE_KEY, "garbage")
    merged = cache.merge([make_event("a")])
    assert [e.id for e in merged] == ["a"]
    assert [e.id for e in cache.load()] == ["a"]


def test_cache_read_error(cache):
    """Test that storage read errors are swallowed."""
    with patch.object(cache.store, "get", side_effect=sqlite3.OperationalError("disk I/O error")):
        assert cache.load() == []


def test_cache_write_error(cache):
    """Test that storage write errors are reported, not raised."""
    with patch.object(cache.store, "set", side_effect=sqlite3.OperationalError("database is locked")):
        assert cache.save([make_event("a")]) is False


def test_cache_clear(cache):
    cache.merge([make_event("a")])
    assert cache.clear() is True
    assert cache.load() == []


def test_cache_clear_error(cache):
    """Test that storage errors while clearing are reported, not raised."""
    with patch.object(cache.store, "delete", side_effect=sqlite3.OperationalError("database is locked")):
        assert cache.clear() is False


def test_sorted_events(cache):
    """Test newest first with undated events last."""
    cache.save([
        make_event("early", timestamp="2024-01-01T08:00:00+00:00"),
        make_event("undated", timestamp=None),
        make_event("late", timestamp="2024-01-01T20:00:00+00:00"),
        make_event("mid", timestamp="2024-01-01T12:00:00+00:00"),
    ])
    assert [e.id for e in cache.sorted_events()] == ["late", "mid", "early", "undated"]


def test_events_for_day(cache):
    """Test day filtering in the display timezone."""
    cache.save([
        make_event("jan1-morning", timestamp="2024-01-01T14:00:00+00:00"),
        # 03:00 UTC on Jan 2 is 10 PM on Jan 1 in New York
        make_event("jan1-night", timestamp="2024-01-02T03:00:00+00:00"),
        make_event("jan2", timestamp="2024-01-02T15:00:00+00:00"),
        make_event("undated", timestamp=None),
    ])

    ny = ZoneInfo("America/New_York")
    assert [e.id for e in cache.events_for_day(date(2024, 1, 1), ny)] == ["jan1-night", "jan1-morning"]
    assert [e.id for e in cache.events_for_day(date(2024, 1, 2))] == ["jan2", "jan1-night"]


# ─────────────────────────────────────────────────────────────────────────────
# NewEventHighlighter
# ─────────────────────────────────────────────────────────────────────────────


def test_highlighter_clears_after_window():
    """Test that is_new is cleared once the window passes."""
    async def scenario():
        highlighter = NewEventHighlighter(window=0.05)
        events = [make_event("a", is_new=True), make_event("b", is_new=True)]

        highlighted = highlighter.track(events)
        assert highlighted == events
        assert highlighter.pending == 2
        assert all(e.is_new for e in events)

        await asyncio.sleep(0.15)
        assert not any(e.is_new for e in events)
        assert highlighter.pending == 0

    asyncio.run(scenario())


def test_highlighter_does_not_retrigger():
    """Test that an id is highlighted at most once."""
    async def scenario():
        highlighter = NewEventHighlighter(window=0.05)
        highlighter.track([make_event("a", is_new=True)])
        await asyncio.sleep(0.1)

        again = make_event("a", is_new=True)
        assert highlighter.track([again]) == []
        assert again.is_new is False

    asyncio.run(scenario())


def test_highlighter_ignores_old_events():
    async def scenario():
        highlighter = NewEventHighlighter(window=0.05)
        assert highlighter.track([make_event("a", is_new=False)]) == []
        assert highlighter.pending == 0

    asyncio.run(scenario())


def test_highlighter_cancel_all():
    """Test that cancelled timers never fire."""
    async def scenario():
        highlighter = NewEventHighlighter(window=0.05)
        event = make_event("a", is_new=True)
        highlighter.track([event])
        highlighter.cancel_all()
        await asyncio.sleep(0.1)
        assert event.is_new is True
        assert highlighter.pending == 0

    asyncio.run(scenario())
