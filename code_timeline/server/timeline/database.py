"""
SQLite backing store for recorded sessions.

Owns the schema, the session lifecycle and the single write lock under
which sequence numbers are assigned. The event log and checkpoint store
are thin views over this class.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple
import sqlite3
import threading
import logging

from code_timeline.shared.errors import (
    SessionAlreadyOpen,
    SessionClosed,
    SessionNotFound,
    StorageFull,
)
from code_timeline.shared.metrics import TimelineMetricsCollector
from code_timeline.shared.protocol import Session, now_ms

logger = logging.getLogger(__name__)

Statement = Tuple[str, tuple]


class Durability(Enum):
    SYNC = "sync"          # Commit before the write returns
    BUFFERED = "buffered"  # Queue in memory, commit periodically


@dataclass
class StoreConfig:
    db_path: str = "data/timeline.db"
    durability: str = "sync"
    # Buffered mode only
    flush_interval_s: float = 0.5
    # Ceiling on payload, content and patch bytes; None for no limit
    max_bytes: Optional[int] = None
    # Checkpoints above this size are refused
    max_content_bytes: int = 100_000


@dataclass
class PathState:
    """Latest content records for one path of the open session."""
    checkpoint_sequence: Optional[int] = None
    last_timestamp: Optional[int] = None


@dataclass
class WriterState:
    """Counters for the open session, only touched under the write lock."""
    session: Session
    next_event_sequence: int = 1
    next_content_sequence: int = 1
    paths: Dict[str, PathState] = field(default_factory=dict)

    def path(self, path: str) -> PathState:
        if path not in self.paths:
            self.paths[path] = PathState()
        return self.paths[path]


SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        root_path TEXT NOT NULL,
        name TEXT,
        start_time INTEGER NOT NULL,
        end_time INTEGER,
        git_branch TEXT,
        git_commit TEXT
    );

    CREATE TABLE IF NOT EXISTS events (
        session_id INTEGER NOT NULL,
        sequence INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        kind TEXT NOT NULL,
        source TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        PRIMARY KEY (session_id, sequence),
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_events_session_time
        ON events(session_id, timestamp, sequence);

    CREATE INDEX IF NOT EXISTS idx_events_session_kind_time
        ON events(session_id, kind, timestamp, sequence);

    CREATE INDEX IF NOT EXISTS idx_events_session_source
        ON events(session_id, source);

    CREATE TABLE IF NOT EXISTS checkpoints (
        session_id INTEGER NOT NULL,
        sequence INTEGER NOT NULL,
        path TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        size INTEGER NOT NULL,
        PRIMARY KEY (session_id, sequence),
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_checkpoints_path_time
        ON checkpoints(session_id, path, timestamp, sequence);

    CREATE INDEX IF NOT EXISTS idx_checkpoints_path_seq
        ON checkpoints(session_id, path, sequence);

    CREATE TABLE IF NOT EXISTS diffs (
        session_id INTEGER NOT NULL,
        sequence INTEGER NOT NULL,
        path TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        anchor_sequence INTEGER NOT NULL,
        patch TEXT NOT NULL,
        chars_added INTEGER DEFAULT 0,
        chars_removed INTEGER DEFAULT 0,
        lines_added INTEGER DEFAULT 0,
        lines_removed INTEGER DEFAULT 0,
        PRIMARY KEY (session_id, sequence),
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_diffs_path_seq
        ON diffs(session_id, path, sequence);

    CREATE TABLE IF NOT EXISTS bookmarks (
        session_id INTEGER NOT NULL,
        sequence INTEGER NOT NULL,
        timestamp INTEGER NOT NULL,
        title TEXT NOT NULL,
        kind TEXT NOT NULL DEFAULT 'manual',
        description TEXT,
        PRIMARY KEY (session_id, sequence),
        FOREIGN KEY (session_id) REFERENCES sessions(id)
    );

    CREATE INDEX IF NOT EXISTS idx_bookmarks_session_time
        ON bookmarks(session_id, timestamp);
"""

# Bytes counted against the storage ceiling, per table
_ACCOUNTED_BYTES = """
    SELECT
        (SELECT COALESCE(SUM(length(CAST(source AS BLOB)) + length(CAST(payload AS BLOB))), 0) FROM events)
      + (SELECT COALESCE(SUM(length(CAST(path AS BLOB)) + size), 0) FROM checkpoints)
      + (SELECT COALESCE(SUM(length(CAST(path AS BLOB)) + length(CAST(patch AS BLOB))), 0) FROM diffs)
      + (SELECT COALESCE(SUM(length(CAST(title AS BLOB)) + length(CAST(COALESCE(description, '') AS BLOB))), 0) FROM bookmarks)
"""


def _row_to_session(row) -> Session:
    return Session(
        id=row["id"],
        root_path=row["root_path"],
        name=row["name"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        git_branch=row["git_branch"],
        git_commit=row["git_commit"],
    )


class TimelineDatabase:
    """
    Persistent store for sessions, events, checkpoints, diffs and bookmarks.

    One connection is shared between the writer and readers; the lock
    around it is the only lock in the store. Writes hold it for
    "read counter, assign next, persist", so sequence numbers are
    gap-free. Reads hold it for the duration of a snapshot, so a reader
    never observes a sequence that is later rolled back.

    In buffered mode writes are queued and committed by a background
    thread every ``flush_interval_s``. Queued rows are invisible to
    readers until flushed and are lost if the process dies first.
    """

    def __init__(self, config: StoreConfig, metrics: Optional[TimelineMetricsCollector] = None):
        self.config = config
        self.durability = Durability(config.durability)
        self.metrics = metrics

        self._lock = threading.RLock()
        self._pending: List[List[Statement]] = []
        self._writer: Optional[WriterState] = None
        self._used_bytes = 0

        self._flush_stop = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None
        self._closed = False

        self._conn = self._connect()
        self._init_database()

        if self.durability == Durability.BUFFERED:
            self._flush_thread = threading.Thread(
                target=self._flush_loop, name="timeline-flush", daemon=True
            )
            self._flush_thread.start()

    def _connect(self) -> sqlite3.Connection:
        db_path = self.config.db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        synchronous = "FULL" if self.durability == Durability.SYNC else "NORMAL"
        conn.execute(f"PRAGMA synchronous = {synchronous}")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_database(self):
        """Initialize the schema and restore writer state for an open session."""
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()
            self._used_bytes = self._conn.execute(_ACCOUNTED_BYTES).fetchone()[0]

            open_session = self._fetch_open_session()
            if open_session:
                self._writer = self._load_writer_state(open_session)
                logger.info(
                    f"Resumed open session {open_session.id} at event "
                    f"{self._writer.next_event_sequence - 1}"
                )

        logger.info(f"Timeline database ready at {self.config.db_path} ({self.durability.value})")

    def _fetch_open_session(self) -> Optional[Session]:
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE end_time IS NULL ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return _row_to_session(row) if row else None

    def _load_writer_state(self, session: Session) -> WriterState:
        conn = self._conn
        last_event = conn.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM events WHERE session_id = ?",
            (session.id,),
        ).fetchone()[0]
        last_content = conn.execute(
            """
            SELECT MAX(
                (SELECT COALESCE(MAX(sequence), 0) FROM checkpoints WHERE session_id = ?),
                (SELECT COALESCE(MAX(sequence), 0) FROM diffs WHERE session_id = ?)
            )
            """,
            (session.id, session.id),
        ).fetchone()[0]

        state = WriterState(
            session=session,
            next_event_sequence=last_event + 1,
            next_content_sequence=last_content + 1,
        )

        for row in conn.execute(
            "SELECT path, MAX(sequence), MAX(timestamp) FROM checkpoints WHERE session_id = ? GROUP BY path",
            (session.id,),
        ):
            state.paths[row[0]] = PathState(checkpoint_sequence=row[1], last_timestamp=row[2])

        for row in conn.execute(
            "SELECT path, MAX(timestamp) FROM diffs WHERE session_id = ? GROUP BY path",
            (session.id,),
        ):
            path_state = state.path(row[0])
            if path_state.last_timestamp is None or row[1] > path_state.last_timestamp:
                path_state.last_timestamp = row[1]

        return state

    # ==================== Sessions ====================

    def start_session(
        self,
        root_path: str,
        name: Optional[str] = None,
        git_branch: Optional[str] = None,
        git_commit: Optional[str] = None,
        start_time: Optional[int] = None,
    ) -> Session:
        """Open a new recording session. Only one may be open at a time."""
        with self._lock:
            if self._writer is not None:
                raise SessionAlreadyOpen(self._writer.session.id)

            start_time = start_time if start_time is not None else now_ms()
            cursor = self._conn.execute(
                """
                INSERT INTO sessions (root_path, name, start_time, git_branch, git_commit)
                VALUES (?, ?, ?, ?, ?)
                """,
                (root_path, name, start_time, git_branch, git_commit),
            )
            self._conn.commit()

            session = Session(
                id=cursor.lastrowid,
                root_path=root_path,
                start_time=start_time,
                name=name,
                git_branch=git_branch,
                git_commit=git_commit,
            )
            self._writer = WriterState(session=session)

        logger.info(f"Started session {session.id} for {root_path}")
        return session

    def end_session(self, session: Session, end_time: Optional[int] = None) -> Session:
        """Close the session; it is immutable afterwards."""
        with self._lock:
            writer = self._writer
            if writer is None or writer.session.id != session.id:
                stored = self.get_session(session.id)
                if stored is None:
                    raise SessionNotFound(session.id)
                raise SessionClosed(session.id)

            self._flush_locked()

            # A session never ends before its last record
            last_record = self._conn.execute(
                """
                SELECT MAX(
                    (SELECT COALESCE(MAX(timestamp), 0) FROM events WHERE session_id = ?),
                    (SELECT COALESCE(MAX(timestamp), 0) FROM checkpoints WHERE session_id = ?),
                    (SELECT COALESCE(MAX(timestamp), 0) FROM diffs WHERE session_id = ?)
                )
                """,
                (session.id, session.id, session.id),
            ).fetchone()[0]

            end_time = end_time if end_time is not None else now_ms()
            end_time = max(end_time, writer.session.start_time, last_record)
            self._conn.execute(
                "UPDATE sessions SET end_time = ? WHERE id = ?",
                (end_time, session.id),
            )
            self._conn.commit()

            writer.session.end_time = end_time
            session.end_time = end_time
            self._writer = None

        logger.info(f"Ended session {session.id}")
        return session

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def open_session(self) -> Optional[Session]:
        """The currently open session, if any."""
        with self._lock:
            return self._writer.session if self._writer else None

    def latest_session(self) -> Optional[Session]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions(self) -> List[Session]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM sessions ORDER BY id").fetchall()
        return [_row_to_session(row) for row in rows]

    def purge_session(self, session_id: int) -> int:
        """
        Delete a closed session and everything it owns.

        Returns:
            Number of rows deleted
        """
        with self._lock:
            if self._writer is not None and self._writer.session.id == session_id:
                raise SessionAlreadyOpen(session_id)
            if self.get_session(session_id) is None:
                raise SessionNotFound(session_id)

            deleted = 0
            try:
                for table in ("bookmarks", "diffs", "checkpoints", "events"):
                    cursor = self._conn.execute(
                        f"DELETE FROM {table} WHERE session_id = ?", (session_id,)
                    )
                    deleted += cursor.rowcount
                self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

            self._used_bytes = self._conn.execute(_ACCOUNTED_BYTES).fetchone()[0]

        logger.info(f"Purged session {session_id} ({deleted} records)")
        if self.metrics:
            self.metrics.update_stored_bytes(self._used_bytes)
        return deleted

    # ==================== Writes ====================

    @contextmanager
    def write_transaction(self, session: Session, nbytes: int) -> Iterator[WriterState]:
        """
        Hold the write lock for one append.

        Checks that ``session`` is the open session and that ``nbytes``
        fits under the ceiling. The caller reads counters from the
        yielded state, calls ``persist`` and only then advances them, so
        a failed write never consumes a sequence number.
        """
        with self._lock:
            writer = self._writer
            if self._closed or writer is None or writer.session.id != session.id:
                self._reject("session_closed")
                raise SessionClosed(session.id)

            limit = self.config.max_bytes
            if limit is not None and self._used_bytes + nbytes > limit:
                self._reject("storage_full")
                raise StorageFull(nbytes, self._used_bytes, limit)

            yield writer

    def persist(self, statements: List[Statement], nbytes: int):
        """Write statements atomically. Must be called inside write_transaction."""
        if self.durability == Durability.BUFFERED:
            self._pending.append(statements)
        else:
            self._execute_batch([statements])

        self._used_bytes += nbytes
        if self.metrics:
            self.metrics.update_stored_bytes(self._used_bytes)

    def _execute_batch(self, batches: List[List[Statement]]):
        try:
            for statements in batches:
                for sql, params in statements:
                    self._conn.execute(sql, params)
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise

    def _reject(self, reason: str):
        if self.metrics:
            self.metrics.increment_rejected(reason)

    @property
    def used_bytes(self) -> int:
        return self._used_bytes

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ==================== Flushing ====================

    def flush(self):
        """Commit all queued writes (buffered mode)."""
        with self._lock:
            self._flush_locked()

    def _flush_locked(self):
        if not self._pending:
            return
        batches = self._pending
        # Batches stay queued if the commit fails
        self._execute_batch(batches)
        self._pending = []
        logger.debug(f"Flushed {len(batches)} queued writes")

    def _flush_loop(self):
        while not self._flush_stop.wait(self.config.flush_interval_s):
            try:
                self.flush()
            except sqlite3.Error as e:
                logger.error(f"Background flush failed, {len(self._pending)} writes still queued: {e}")

    # ==================== Reads ====================

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock across several reads so they see one state."""
        with self._lock:
            yield self._conn

    def query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def get_stats(self) -> Dict[str, Any]:
        """Store statistics."""
        with self._lock:
            counts = {
                table: self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("sessions", "events", "checkpoints", "diffs", "bookmarks")
            }
        return {
            **counts,
            "used_bytes": self._used_bytes,
            "max_bytes": self.config.max_bytes,
            "pending_writes": len(self._pending),
            "durability": self.durability.value,
        }

    def close(self):
        """Flush queued writes and close the connection."""
        if self._closed:
            return

        self._flush_stop.set()
        if self._flush_thread:
            self._flush_thread.join(timeout=2.0)

        with self._lock:
            self._flush_locked()
            self._closed = True
            self._conn.close()

        logger.info("Timeline database closed")
