"""Append-only event log storage.

``LogStore`` is the contract the sync task needs from a node's local log;
``SQLiteLogStore`` implements it on SQLite and also carries the multi-owner
queries the server side answers descriptors and receive requests from.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from ..ranges import RangeSet
from ..wire import Descriptor, Event, now_millis

logger = logging.getLogger(__name__)

LOG_SCHEMA = """
-- Audit events: one row per (owner, log, id), re-delivery overwrites in place
CREATE TABLE IF NOT EXISTS events (
    owner_id TEXT NOT NULL,
    log_id INTEGER NOT NULL,
    id INTEGER NOT NULL,
    timestamp INTEGER NOT NULL,
    type INTEGER NOT NULL,
    properties TEXT NOT NULL,
    received_at TEXT NOT NULL,
    PRIMARY KEY (owner_id, log_id, id)
);

-- First retained id per log after pruning
CREATE TABLE IF NOT EXISTS lowest_ids (
    owner_id TEXT NOT NULL,
    log_id INTEGER NOT NULL,
    lowest_id INTEGER NOT NULL,
    PRIMARY KEY (owner_id, log_id)
);

CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
"""


class LogStore(ABC):
    """A node's logical logs, each a dense sequence of events starting at 1."""

    @abstractmethod
    def highest_id(self, log_id: int) -> int:
        """Highest event id in the log, 0 when the log is empty."""

    @abstractmethod
    def get(self, log_id: int, from_id: int, to_id: int) -> list[Event]:
        """Events with ``from_id <= id <= to_id``, ascending by id."""

    @abstractmethod
    def log_ids(self) -> list[int]:
        """IDs of all logs that hold at least one event."""

    @abstractmethod
    def append(self, events: Iterable[Event]) -> int:
        """Store events, replacing any with the same identity.

        Must be idempotent: re-delivered events never create duplicates.

        Returns:
            Number of events that were not present before.
        """


class SQLiteLogStore(LogStore):
    """SQLite-backed log store.

    The ``LogStore`` methods operate on the logs of ``owner_id`` (this node).
    The descriptor and event queries used by the server side take an explicit
    owner and span every node that ever sent events.
    """

    def __init__(self, db_path: str | Path, owner_id: str):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ``":memory:"``.
            owner_id: Identity of the node whose logs the contract methods use.
        """
        self.db_path = Path(db_path).expanduser()
        self.owner_id = owner_id
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(LOG_SCHEMA)
        self._conn.commit()

        logger.info(f"SQLiteLogStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            owner_id=row["owner_id"],
            log_id=row["log_id"],
            id=row["id"],
            timestamp=row["timestamp"],
            type=row["type"],
            properties=json.loads(row["properties"]),
        )

    # ==================== LogStore contract ====================

    def highest_id(self, log_id: int, owner_id: str | None = None) -> int:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT MAX(id) FROM events WHERE owner_id = ? AND log_id = ?",
            (owner_id or self.owner_id, log_id),
        ).fetchone()
        return row[0] if row[0] is not None else 0

    def get(
        self,
        log_id: int,
        from_id: int,
        to_id: int,
        owner_id: str | None = None,
    ) -> list[Event]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT owner_id, log_id, id, timestamp, type, properties
            FROM events
            WHERE owner_id = ? AND log_id = ? AND id BETWEEN ? AND ?
            ORDER BY id ASC
            """,
            (owner_id or self.owner_id, log_id, from_id, to_id),
        )
        return [self._row_to_event(row) for row in cursor]

    def log_ids(self, owner_id: str | None = None) -> list[int]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT DISTINCT log_id FROM events WHERE owner_id = ? ORDER BY log_id",
            (owner_id or self.owner_id,),
        )
        return [row[0] for row in cursor]

    def append(self, events: Iterable[Event]) -> int:
        conn = self._ensure_connected()

        added = 0
        with self._lock:
            for event in events:
                if event.id < self.lowest_id(event.owner_id, event.log_id):
                    logger.debug(f"Dropping pruned event {event.identity}")
                    continue

                existing = conn.execute(
                    "SELECT 1 FROM events WHERE owner_id = ? AND log_id = ? AND id = ?",
                    event.identity,
                ).fetchone()

                conn.execute(
                    """
                    INSERT INTO events (
                        owner_id, log_id, id, timestamp, type, properties, received_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (owner_id, log_id, id) DO UPDATE SET
                        timestamp = excluded.timestamp,
                        type = excluded.type,
                        properties = excluded.properties
                    """,
                    (
                        event.owner_id,
                        event.log_id,
                        event.id,
                        event.timestamp,
                        event.type,
                        json.dumps(event.properties),
                        datetime.now().isoformat(),
                    ),
                )
                if not existing:
                    added += 1
            conn.commit()

        if added:
            logger.debug(f"Stored {added} new events")
        return added

    # ==================== Producer side ====================

    def log_event(
        self,
        log_id: int,
        event_type: int,
        properties: dict[str, str] | None = None,
        timestamp: int | None = None,
    ) -> Event:
        """Append a new event to one of this node's logs.

        The event gets the next id of the log, keeping ids dense from 1.
        """
        with self._lock:
            event = Event(
                owner_id=self.owner_id,
                log_id=log_id,
                id=self.highest_id(log_id) + 1,
                timestamp=timestamp if timestamp is not None else now_millis(),
                type=event_type,
                properties=dict(properties or {}),
            )
            self.append([event])
        return event

    # ==================== Server side ====================

    def owners(self) -> list[str]:
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT owner_id FROM events
            UNION
            SELECT owner_id FROM lowest_ids
            ORDER BY owner_id
            """
        )
        return [row[0] for row in cursor]

    def descriptor(self, owner_id: str, log_id: int) -> Descriptor:
        """Which ids of the given log this store holds.

        Ids below the log's lowest id count as held, so a peer never resends
        events that were pruned here on purpose.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT id FROM events WHERE owner_id = ? AND log_id = ?",
            (owner_id, log_id),
        )
        ranges = RangeSet.from_values(row[0] for row in cursor)
        lowest = self.lowest_id(owner_id, log_id)
        if lowest > 1:
            ranges = ranges.union(RangeSet.span(1, lowest - 1))
        return Descriptor(owner_id, log_id, ranges)

    def descriptors(self, owner_id: str | None = None) -> list[Descriptor]:
        """Descriptors of every log of one owner, or of all owners."""
        owners = [owner_id] if owner_id is not None else self.owners()
        return [
            self.descriptor(owner, log_id)
            for owner in owners
            for log_id in self.log_ids(owner)
        ]

    def events(self, descriptor: Descriptor) -> list[Event]:
        """Events of the descriptor's log whose ids are in its range set."""
        result = []
        for r in descriptor.ranges.range_iterator():
            result.extend(
                self.get(descriptor.log_id, r.low, r.high, owner_id=descriptor.owner_id)
            )
        return result

    def lowest_id(self, owner_id: str, log_id: int) -> int:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT lowest_id FROM lowest_ids WHERE owner_id = ? AND log_id = ?",
            (owner_id, log_id),
        ).fetchone()
        return row[0] if row else 0

    def set_lowest_id(self, owner_id: str, log_id: int, lowest_id: int) -> int:
        """Raise the lowest retained id of a log and prune older events.

        Lowering it again is ignored.

        Returns:
            Number of events deleted.
        """
        conn = self._ensure_connected()
        with self._lock:
            if lowest_id <= self.lowest_id(owner_id, log_id):
                return 0
            conn.execute(
                """
                INSERT INTO lowest_ids (owner_id, log_id, lowest_id) VALUES (?, ?, ?)
                ON CONFLICT (owner_id, log_id) DO UPDATE SET lowest_id = excluded.lowest_id
                """,
                (owner_id, log_id, lowest_id),
            )
            deleted = self.cleanup_before(owner_id, log_id, lowest_id)
            conn.commit()
        return deleted

    def cleanup_before(self, owner_id: str, log_id: int, lowest_id: int) -> int:
        """Delete events of a log with an id below ``lowest_id``."""
        conn = self._ensure_connected()
        with self._lock:
            cursor = conn.execute(
                "DELETE FROM events WHERE owner_id = ? AND log_id = ? AND id < ?",
                (owner_id, log_id, lowest_id),
            )
            conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(
                f"Pruned {deleted} events of {owner_id}/{log_id} below id {lowest_id}"
            )
        return deleted

    def stats(self) -> dict[str, Any]:
        """Get store statistics."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {"owner_id": self.owner_id}

        cursor = conn.execute("SELECT COUNT(*) FROM events")
        stats["total_events"] = cursor.fetchone()[0]

        cursor = conn.execute(
            "SELECT COUNT(*) FROM events WHERE owner_id = ?", (self.owner_id,)
        )
        stats["local_events"] = cursor.fetchone()[0]

        stats["local_logs"] = len(self.log_ids())
        stats["owners"] = len(self.owners())

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats
