"""Local timeline cache backed by SQLite.

Freshly extracted events are shown from here until the next authoritative
fetch from the platform. The cache is a convenience: read and write failures
are logged and never reach the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from .constants import NEW_EVENT_HIGHLIGHT_SECONDS, TIMELINE_CACHE_KEY
from .models import DisplayTimelineEvent
from .timeutil import day_bounds, parse_start_time

logger = logging.getLogger(__name__)


class LocalStore:
    """String-keyed JSON blobs in a single SQLite file."""

    def __init__(self, db_path: Path):
        """Initialize local store.

        Args:
            db_path: Path to supernanny.db
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), timeout=30.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
        return self._conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_conn()

        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """)

        version = conn.execute("SELECT version FROM schema_version").fetchone()
        if version is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        elif version[0] < 1:
            logger.warning(f"Schema version {version[0]} detected, may need migration")

        conn.executescript("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT (datetime('now'))
            );
        """)
        conn.commit()

    def get(self, key: str) -> str | None:
        """Return the raw string stored under ``key``."""
        row = self._get_conn().execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        conn = self._get_conn()
        conn.execute(
            """
            INSERT INTO kv (key, value, updated_at) VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value),
        )
        conn.commit()

    def delete(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        conn.commit()

    def close(self):
        """Close database connection.

        Forces a WAL checkpoint before closing so the main file is complete.
        """
        if self._conn is not None:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._conn.close()
            self._conn = None


def merge_events(
    new_events: Iterable[DisplayTimelineEvent],
    existing: Iterable[DisplayTimelineEvent],
) -> list[DisplayTimelineEvent]:
    """Prepend new events to the cached list, keeping the first copy of each id.

    New events come first, so on an id collision the fresh record replaces
    the stale cached one.
    """
    seen: set[str] = set()
    merged = []
    for event in [*new_events, *existing]:
        if event.id in seen:
            continue
        seen.add(event.id)
        merged.append(event)
    return merged


def _sort_key(event: DisplayTimelineEvent) -> tuple[int, datetime]:
    parsed = parse_start_time(event.timestamp) if event.timestamp else None
    if parsed is None:
        return (0, datetime.min.replace(tzinfo=timezone.utc))
    return (1, parsed)


class TimelineCache:
    """The locally persisted list of timeline events."""

    def __init__(self, store: LocalStore, key: str = TIMELINE_CACHE_KEY):
        self.store = store
        self.key = key

    def load(self) -> list[DisplayTimelineEvent]:
        """Read cached events.

        Corrupt blobs and storage errors yield an empty list. Individual
        malformed entries are skipped with a warning.
        """
        try:
            raw = self.store.get(self.key)
        except sqlite3.Error as e:
            logger.warning(f"Cannot read timeline cache: {e}")
            return []
        if not raw:
            return []

        try:
            items = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Timeline cache is corrupt, ignoring it: {e}")
            return []
        if not isinstance(items, list):
            logger.warning(f"Timeline cache holds {type(items).__name__}, expected a list")
            return []

        events = []
        skipped = 0
        for item in items:
            try:
                events.append(DisplayTimelineEvent.model_validate(item))
            except ValidationError as e:
                skipped += 1
                logger.debug(f"Skipping malformed cached event: {e}")
        if skipped:
            logger.warning(f"Loaded {len(events)} cached events, skipped {skipped} malformed entries")
        return events

    def save(self, events: list[DisplayTimelineEvent]) -> bool:
        """Write the list back. Returns False (and logs) on storage failure."""
        payload = json.dumps([e.to_cache_dict() for e in events])
        try:
            self.store.set(self.key, payload)
        except sqlite3.Error as e:
            logger.error(f"Cannot write timeline cache: {e}")
            return False
        return True

    def merge(self, new_events: list[DisplayTimelineEvent]) -> list[DisplayTimelineEvent]:
        """Merge a batch of new events into the cache and return the result."""
        merged = merge_events(new_events, self.load())
        self.save(merged)
        logger.info(f"Merged {len(new_events)} new events, cache holds {len(merged)}")
        return merged

    def clear(self) -> bool:
        """Drop the cached timeline. Returns False (and logs) on storage failure."""
        try:
            self.store.delete(self.key)
        except sqlite3.Error as e:
            logger.error(f"Cannot clear timeline cache: {e}")
            return False
        return True

    def sorted_events(self) -> list[DisplayTimelineEvent]:
        """Cached events newest first; events without a timestamp go last."""
        return sorted(self.load(), key=_sort_key, reverse=True)

    def events_for_day(self, day: date, tz: tzinfo = timezone.utc) -> list[DisplayTimelineEvent]:
        """Cached events whose timestamp falls on ``day`` in ``tz``, newest first."""
        start, end = day_bounds(day, tz)
        result = []
        for event in self.sorted_events():
            ts = parse_start_time(event.timestamp) if event.timestamp else None
            if ts is not None and start <= ts <= end:
                result.append(event)
        return result


class NewEventHighlighter:
    """Clears the one-shot ``is_new`` flag after the display window.

    Each id is highlighted at most once per highlighter. Timers run on the
    current asyncio loop.
    """

    def __init__(self, window: float = NEW_EVENT_HIGHLIGHT_SECONDS):
        self.window = window
        self._seen: set[str] = set()
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def track(self, events: list[DisplayTimelineEvent]) -> list[DisplayTimelineEvent]:
        """Schedule clearing for new events; suppress re-triggers for seen ids.

        Returns the events that are highlighted now.
        """
        loop = asyncio.get_running_loop()
        highlighted = []
        for event in events:
            if not event.is_new:
                continue
            if event.id in self._seen:
                event.is_new = False
                continue
            self._seen.add(event.id)
            self._timers[event.id] = loop.call_later(self.window, self._clear, event)
            highlighted.append(event)
        return highlighted

    def _clear(self, event: DisplayTimelineEvent) -> None:
        event.is_new = False
        self._timers.pop(event.id, None)

    @property
    def pending(self) -> int:
        return len(self._timers)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
