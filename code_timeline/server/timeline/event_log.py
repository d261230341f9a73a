"""
Event log for a recorded session.

Append-only, ordered by (timestamp, sequence). The sequence number is
assigned by the log and is the authoritative order; timestamps only
position events on the wall clock.
"""

from typing import List, Optional, Dict, Any, Iterable, Iterator
import json
import logging

from code_timeline.shared.protocol import (
    Bookmark,
    BookmarkKind,
    Event,
    EventKind,
    FILE_EVENT_KINDS,
    Session,
    now_ms,
)
from .database import TimelineDatabase

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = "session_id, sequence, timestamp, kind, source, payload"


def _row_to_event(row) -> Event:
    return Event(
        session_id=row["session_id"],
        sequence=row["sequence"],
        timestamp=row["timestamp"],
        kind=EventKind(row["kind"]),
        source=row["source"],
        payload=json.loads(row["payload"]) if row["payload"] else {},
    )


def _kind_values(kinds: Optional[Iterable]) -> List[str]:
    if not kinds:
        return []
    return [EventKind(k).value for k in kinds]


class EventLog:
    """
    Append-only event log scoped to one session.

    Any number of readers may query while the recorder appends; each
    query sees the log as of the moment it runs.
    """

    def __init__(self, database: TimelineDatabase, session: Session):
        self.db = database
        self.session = session

    def append(
        self,
        kind: EventKind,
        source: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> int:
        """
        Append an event.

        Returns:
            The sequence number assigned to the event

        Raises:
            SessionClosed: the session has ended
            StorageFull: the store is at its byte ceiling
        """
        kind = EventKind(kind)
        timestamp = int(timestamp) if timestamp is not None else now_ms()
        payload_json = json.dumps(payload or {})
        nbytes = len(source.encode("utf-8")) + len(payload_json.encode("utf-8"))

        with self.db.write_transaction(self.session, nbytes) as writer:
            sequence = writer.next_event_sequence
            self.db.persist([self._insert_event(sequence, timestamp, kind, source, payload_json)], nbytes)
            writer.next_event_sequence = sequence + 1

        if self.db.metrics:
            self.db.metrics.increment_events(kind.value)
        logger.debug(f"Appended {kind.value} event {sequence} for {source}")
        return sequence

    def add_bookmark(
        self,
        title: str,
        kind: str = BookmarkKind.MANUAL.value,
        timestamp: Optional[int] = None,
        description: Optional[str] = None,
    ) -> int:
        """
        Flag an instant of interest.

        Writes a bookmark event and the bookmark record together; both
        carry the same sequence number.
        """
        kind = kind.value if isinstance(kind, BookmarkKind) else str(kind)
        timestamp = int(timestamp) if timestamp is not None else now_ms()
        payload = {"title": title, "kind": kind}
        if description:
            payload["description"] = description
        payload_json = json.dumps(payload)
        nbytes = (
            len(payload_json.encode("utf-8"))
            + len(title.encode("utf-8"))
            + len((description or "").encode("utf-8"))
        )

        with self.db.write_transaction(self.session, nbytes) as writer:
            sequence = writer.next_event_sequence
            self.db.persist(
                [
                    self._insert_event(sequence, timestamp, EventKind.BOOKMARK, "", payload_json),
                    (
                        """
                        INSERT INTO bookmarks (session_id, sequence, timestamp, title, kind, description)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (self.session.id, sequence, timestamp, title, kind, description),
                    ),
                ],
                nbytes,
            )
            writer.next_event_sequence = sequence + 1

        if self.db.metrics:
            self.db.metrics.increment_events(EventKind.BOOKMARK.value)
        logger.info(f"Bookmark '{title}' ({kind}) at {timestamp}")
        return sequence

    def _insert_event(self, sequence: int, timestamp: int, kind: EventKind, source: str, payload_json: str):
        return (
            f"INSERT INTO events ({_EVENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (self.session.id, sequence, timestamp, kind.value, source, payload_json),
        )

    def get(self, sequence: int) -> Optional[Event]:
        row = self.db.query_one(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE session_id = ? AND sequence = ?",
            (self.session.id, sequence),
        )
        return _row_to_event(row) if row else None

    def range(
        self,
        from_timestamp: Optional[int] = None,
        to_timestamp: Optional[int] = None,
        kinds: Optional[Iterable[EventKind]] = None,
        source: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """
        Get events within a time range.

        Args:
            from_timestamp: Start timestamp (inclusive), None for the beginning
            to_timestamp: End timestamp (inclusive), None for the end
            kinds: Optional filter by event kinds
            source: Optional filter by source (path or terminal id)
            limit: Maximum number of events to return

        Returns:
            Events ordered by (timestamp, sequence)
        """
        query = f"SELECT {_EVENT_COLUMNS} FROM events WHERE session_id = ?"
        params: List[Any] = [self.session.id]

        if from_timestamp is not None:
            query += " AND timestamp >= ?"
            params.append(int(from_timestamp))

        if to_timestamp is not None:
            query += " AND timestamp <= ?"
            params.append(int(to_timestamp))

        query, params = self._filter(query, params, kinds, source)

        query += " ORDER BY timestamp ASC, sequence ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [_row_to_event(row) for row in self.db.query(query, tuple(params))]

    def after(
        self,
        timestamp: float,
        sequence: int,
        to_timestamp: Optional[int] = None,
        kinds: Optional[Iterable[EventKind]] = None,
        limit: int = 500,
    ) -> List[Event]:
        """
        Page of events strictly after the (timestamp, sequence) key.

        Keyset paging never skips or repeats events that share a
        timestamp, unlike paging by timestamp alone.
        """
        query = f"""
            SELECT {_EVENT_COLUMNS} FROM events
            WHERE session_id = ?
              AND (timestamp > ? OR (timestamp = ? AND sequence > ?))
        """
        params: List[Any] = [self.session.id, timestamp, timestamp, sequence]

        if to_timestamp is not None:
            query += " AND timestamp <= ?"
            params.append(int(to_timestamp))

        query, params = self._filter(query, params, kinds, None)

        query += " ORDER BY timestamp ASC, sequence ASC LIMIT ?"
        params.append(limit)

        return [_row_to_event(row) for row in self.db.query(query, tuple(params))]

    def iterate_events(
        self,
        from_timestamp: Optional[int] = None,
        to_timestamp: Optional[int] = None,
        kinds: Optional[Iterable[EventKind]] = None,
        batch_size: int = 1000,
    ) -> Iterator[Event]:
        """
        Iterate over events in a time range.

        Uses batched queries for memory efficiency with long sessions.
        """
        batch = self.range(from_timestamp, to_timestamp, kinds, limit=batch_size)

        while batch:
            yield from batch

            if len(batch) < batch_size:
                break

            # Continue strictly after the last event seen
            last = batch[-1]
            batch = self.after(last.timestamp, last.sequence, to_timestamp, kinds, batch_size)

    def _filter(self, query: str, params: List[Any], kinds, source):
        kind_values = _kind_values(kinds)
        if kind_values:
            placeholders = ",".join("?" * len(kind_values))
            query += f" AND kind IN ({placeholders})"
            params.extend(kind_values)

        if source is not None:
            query += " AND source = ?"
            params.append(source)

        return query, params

    def count(self, kinds: Optional[Iterable[EventKind]] = None) -> int:
        query = "SELECT COUNT(*) FROM events WHERE session_id = ?"
        params: List[Any] = [self.session.id]
        query, params = self._filter(query, params, kinds, None)
        return self.db.query_one(query, tuple(params))[0]

    def last_event(self) -> Optional[Event]:
        row = self.db.query_one(
            f"""
            SELECT {_EVENT_COLUMNS} FROM events WHERE session_id = ?
            ORDER BY timestamp DESC, sequence DESC LIMIT 1
            """,
            (self.session.id,),
        )
        return _row_to_event(row) if row else None

    def bookmarks(
        self,
        from_timestamp: Optional[int] = None,
        to_timestamp: Optional[int] = None,
    ) -> List[Bookmark]:
        query = """
            SELECT session_id, sequence, timestamp, title, kind, description
            FROM bookmarks WHERE session_id = ?
        """
        params: List[Any] = [self.session.id]

        if from_timestamp is not None:
            query += " AND timestamp >= ?"
            params.append(int(from_timestamp))
        if to_timestamp is not None:
            query += " AND timestamp <= ?"
            params.append(int(to_timestamp))

        query += " ORDER BY timestamp ASC, sequence ASC"

        return [
            Bookmark(
                session_id=row["session_id"],
                sequence=row["sequence"],
                timestamp=row["timestamp"],
                title=row["title"],
                kind=row["kind"],
                description=row["description"],
            )
            for row in self.db.query(query, tuple(params))
        ]

    def source_change_counts(self) -> Dict[str, Dict[str, Any]]:
        """Per-source count of file events and the latest timestamp."""
        kind_values = _kind_values(FILE_EVENT_KINDS)
        placeholders = ",".join("?" * len(kind_values))
        rows = self.db.query(
            f"""
            SELECT source, COUNT(*) AS changes, MAX(timestamp) AS last_timestamp
            FROM events
            WHERE session_id = ? AND kind IN ({placeholders})
            GROUP BY source
            """,
            (self.session.id, *kind_values),
        )
        return {
            row["source"]: {"changes": row["changes"], "last_timestamp": row["last_timestamp"]}
            for row in rows
        }

    def get_timeline_summary(
        self,
        from_timestamp: Optional[int] = None,
        to_timestamp: Optional[int] = None,
        bucket_ms: int = 60_000,
    ) -> List[Dict[str, Any]]:
        """
        Get a summary of events grouped into time buckets.

        Useful for displaying a timeline overview.
        """
        bucket_ms = max(1, int(bucket_ms))
        query = """
            SELECT
                (timestamp / ?) * ? AS bucket,
                kind,
                COUNT(*) AS count
            FROM events
            WHERE session_id = ?
        """
        params: List[Any] = [bucket_ms, bucket_ms, self.session.id]

        if from_timestamp is not None:
            query += " AND timestamp >= ?"
            params.append(int(from_timestamp))
        if to_timestamp is not None:
            query += " AND timestamp <= ?"
            params.append(int(to_timestamp))

        query += " GROUP BY bucket, kind ORDER BY bucket"

        buckets: Dict[int, Dict[str, int]] = {}
        for row in self.db.query(query, tuple(params)):
            buckets.setdefault(row["bucket"], {})[row["kind"]] = row["count"]

        return [
            {
                "timestamp": bucket_time,
                "events": counts,
                "total": sum(counts.values()),
            }
            for bucket_time, counts in sorted(buckets.items())
        ]
