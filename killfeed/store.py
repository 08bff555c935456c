"""Two-tier event store: in-memory recent feeds + SQLite persistent history."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from killfeed.correlator import FinalizedEvent

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id TEXT NOT NULL UNIQUE,
    player_involved INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_player ON events(player_involved, seq);
"""

FEEDS = ("global", "player")

DEFAULT_MAX_EVENTS = 100
DEFAULT_DB_PATH = "events.db"


@dataclass(frozen=True, slots=True)
class LoadMoreResult:
    """One page of older events, newest first."""

    events: list[FinalizedEvent]
    has_more: bool


class EventDatabase:
    """Durable event history in SQLite, ordered by insertion."""

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.executescript(_SCHEMA)

    def upsert(self, event: FinalizedEvent, player_involved: bool) -> None:
        """Insert the event, or replace the payload of an existing id in place."""
        payload = json.dumps(event.to_wire(""))
        self._conn.execute(
            "INSERT INTO events (event_id, player_involved, payload) VALUES (?, ?, ?) "
            "ON CONFLICT(event_id) DO UPDATE SET "
            "payload = excluded.payload, "
            "player_involved = MAX(player_involved, excluded.player_involved)",
            (event.event_id, int(player_involved), payload),
        )
        self._conn.commit()

    def get(self, event_id: str) -> FinalizedEvent | None:
        row = self._conn.execute(
            "SELECT payload FROM events WHERE event_id = ?", (event_id,)
        ).fetchone()
        return _decode(row[0]) if row else None

    def page(self, count: int, offset: int, player_only: bool = False) -> list[FinalizedEvent]:
        """Return up to *count* events, newest first, skipping *offset* newest."""
        where = "WHERE player_involved = 1 " if player_only else ""
        rows = self._conn.execute(
            f"SELECT payload FROM events {where}ORDER BY seq DESC LIMIT ? OFFSET ?",
            (count, offset),
        ).fetchall()
        return [_decode(payload) for (payload,) in rows]

    def count(self, player_only: bool = False) -> int:
        where = " WHERE player_involved = 1" if player_only else ""
        row = self._conn.execute(f"SELECT COUNT(*) FROM events{where}").fetchone()
        return row[0] if row else 0

    def clear(self) -> int:
        cursor = self._conn.execute("DELETE FROM events")
        self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        """Close database connection."""
        self._conn.close()


def _decode(payload: str) -> FinalizedEvent:
    return FinalizedEvent.from_wire(json.loads(payload))


class EventStore:
    """Recent events for live display, backed by durable history.

    Level 1: one bounded deque per feed (global, player), newest first.
    Level 2: EventDatabase; memory eviction never deletes from it, so
    evicted events stay reachable through load_more().
    """

    def __init__(
        self,
        db_path: str | Path = DEFAULT_DB_PATH,
        max_events: int = DEFAULT_MAX_EVENTS,
    ) -> None:
        self._max_events = max_events
        self._feeds: dict[str, deque[FinalizedEvent]] = {
            feed: deque(maxlen=max_events) for feed in FEEDS
        }
        self._db = EventDatabase(db_path)

    def add(self, event: FinalizedEvent, player_involved: bool = False) -> None:
        """Store an event; an id already present is replaced where it sits."""
        self._db.upsert(event, player_involved)
        self._memory_put("global", event)
        if player_involved:
            self._memory_put("player", event)

    def recent(self, feed: str = "global", limit: int | None = None) -> list[FinalizedEvent]:
        """In-memory events for *feed*, newest first."""
        events = list(self._feeds[feed])
        return events if limit is None else events[:limit]

    def load_more(self, count: int, offset: int, feed: str = "global") -> LoadMoreResult:
        """Older events from durable storage.

        *offset* counts from the newest stored event at call time, so events
        added between calls shift the window; the caller drops duplicates by id.
        """
        if feed not in self._feeds:
            raise ValueError(f"Unknown feed: {feed}")
        if count <= 0 or offset < 0:
            return LoadMoreResult(events=[], has_more=False)
        player_only = feed == "player"
        events = self._db.page(count, offset, player_only=player_only)
        total = self._db.count(player_only=player_only)
        return LoadMoreResult(events=events, has_more=offset + len(events) < total)

    def attach_category(self, event_id: str, category: Mapping[str, Any]) -> FinalizedEvent | None:
        """Record the remote service's category for an event; returns the updated event."""
        event = self._find(event_id) or self._db.get(event_id)
        if event is None:
            logger.debug("Category for unknown event %s ignored", event_id)
            return None
        updated = event.with_category(category)
        player_involved = any(e.event_id == event_id for e in self._feeds["player"])
        self.add(updated, player_involved)
        return updated

    def stats(self) -> dict[str, int]:
        """Return store statistics."""
        return {
            "global_entries": len(self._feeds["global"]),
            "player_entries": len(self._feeds["player"]),
            "memory_max": self._max_events,
            "db_entries": self._db.count(),
        }

    def clear(self) -> None:
        for feed in self._feeds.values():
            feed.clear()
        deleted = self._db.clear()
        logger.info("Cleared %d stored events", deleted)

    def close(self) -> None:
        self._db.close()

    def _find(self, event_id: str) -> FinalizedEvent | None:
        return next((e for e in self._feeds["global"] if e.event_id == event_id), None)

    def _memory_put(self, feed: str, event: FinalizedEvent) -> None:
        """Replace in place if present, else add newest-first evicting the oldest."""
        events = self._feeds[feed]
        for i, existing in enumerate(events):
            if existing.event_id == event.event_id:
                events[i] = event
                return
        events.appendleft(event)  # deque(maxlen) drops from the right (oldest)
