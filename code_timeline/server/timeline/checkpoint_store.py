"""
Checkpoint store for file contents.

Each path has an ordered chain of full checkpoints, and between them
optional diffs anchored to the checkpoint that precedes them. Checkpoints
and diffs share one sequence counter per session, which decides their
relative order.
"""

from typing import Any, Dict, List, Optional, Set
import json
import logging

from code_timeline.shared.errors import (
    ContentTooLarge,
    NoAnchorCheckpoint,
    OutOfOrderTimestamp,
)
from code_timeline.shared.patches import Patcher, get_patcher
from code_timeline.shared.protocol import (
    Checkpoint,
    Diff,
    Session,
    byte_size,
    fingerprint,
    now_ms,
)
from .database import TimelineDatabase, WriterState

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_BYTES = 100_000

_CHECKPOINT_COLUMNS = "session_id, sequence, path, timestamp, content, content_hash, size"
_DIFF_COLUMNS = (
    "session_id, sequence, path, timestamp, anchor_sequence, patch, "
    "chars_added, chars_removed, lines_added, lines_removed"
)


def _row_to_checkpoint(row) -> Checkpoint:
    return Checkpoint(
        session_id=row["session_id"],
        sequence=row["sequence"],
        path=row["path"],
        timestamp=row["timestamp"],
        content=row["content"],
        content_hash=row["content_hash"],
        size=row["size"],
    )


def _row_to_diff(row) -> Diff:
    return Diff(
        session_id=row["session_id"],
        sequence=row["sequence"],
        path=row["path"],
        timestamp=row["timestamp"],
        anchor_sequence=row["anchor_sequence"],
        patch=json.loads(row["patch"]),
        chars_added=row["chars_added"] or 0,
        chars_removed=row["chars_removed"] or 0,
        lines_added=row["lines_added"] or 0,
        lines_removed=row["lines_removed"] or 0,
    )


class CheckpointStore:
    """
    Per-path checkpoints and diffs for one session.

    Lookups go through the (session, path, timestamp, sequence) index,
    so finding the checkpoint in effect at a time is a B-tree seek
    rather than a scan of the path's history.
    """

    def __init__(
        self,
        database: TimelineDatabase,
        session: Session,
        max_content_bytes: int = DEFAULT_MAX_CONTENT_BYTES,
        patcher: Optional[Patcher] = None,
    ):
        self.db = database
        self.session = session
        self.max_content_bytes = max_content_bytes
        self.patcher = patcher or get_patcher()

    def put_checkpoint(self, path: str, content: str, timestamp: Optional[int] = None) -> int:
        """
        Store the full content of a path.

        Returns:
            Content sequence number of the checkpoint

        Raises:
            ContentTooLarge: content is above the size cap
            OutOfOrderTimestamp: older than the path's latest record
            SessionClosed, StorageFull
        """
        size = byte_size(content)
        if size > self.max_content_bytes:
            if self.db.metrics:
                self.db.metrics.increment_rejected("content_too_large")
            raise ContentTooLarge(path, size, self.max_content_bytes)

        timestamp = int(timestamp) if timestamp is not None else now_ms()
        content_hash = fingerprint(content)
        nbytes = size + byte_size(path)

        with self.db.write_transaction(self.session, nbytes) as writer:
            path_state = writer.path(path)
            self._check_order(path, timestamp, path_state.last_timestamp)

            sequence = writer.next_content_sequence
            self.db.persist(
                [(
                    f"INSERT INTO checkpoints ({_CHECKPOINT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (self.session.id, sequence, path, timestamp, content, content_hash, size),
                )],
                nbytes,
            )
            writer.next_content_sequence = sequence + 1
            path_state.checkpoint_sequence = sequence
            path_state.last_timestamp = timestamp

        if self.db.metrics:
            self.db.metrics.increment_checkpoints()
        logger.debug(f"Checkpoint {sequence} for {path} ({size} bytes)")
        return sequence

    def put_diff(
        self,
        path: str,
        patch: Any,
        timestamp: Optional[int] = None,
        stats: Optional[Dict[str, int]] = None,
    ) -> int:
        """
        Store an incremental patch for a path.

        The diff is anchored to the latest checkpoint of the path.

        Raises:
            NoAnchorCheckpoint: the path has no checkpoint in this session
            OutOfOrderTimestamp: older than the path's latest record
            SessionClosed, StorageFull
        """
        timestamp = int(timestamp) if timestamp is not None else now_ms()
        stats = stats if stats is not None else self.patcher.stats(patch)
        patch_json = json.dumps(patch)
        nbytes = byte_size(patch_json) + byte_size(path)

        with self.db.write_transaction(self.session, nbytes) as writer:
            anchor = self._anchor_for(writer, path)
            path_state = writer.path(path)
            self._check_order(path, timestamp, path_state.last_timestamp)

            sequence = writer.next_content_sequence
            self.db.persist(
                [(
                    f"INSERT INTO diffs ({_DIFF_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        self.session.id,
                        sequence,
                        path,
                        timestamp,
                        anchor,
                        patch_json,
                        stats.get("chars_added", 0),
                        stats.get("chars_removed", 0),
                        stats.get("lines_added", 0),
                        stats.get("lines_removed", 0),
                    ),
                )],
                nbytes,
            )
            writer.next_content_sequence = sequence + 1
            path_state.last_timestamp = timestamp

        if self.db.metrics:
            self.db.metrics.increment_diffs()
        logger.debug(f"Diff {sequence} for {path} anchored at {anchor}")
        return sequence

    def _anchor_for(self, writer: WriterState, path: str) -> int:
        path_state = writer.paths.get(path)
        if path_state is None or path_state.checkpoint_sequence is None:
            if self.db.metrics:
                self.db.metrics.increment_rejected("no_anchor_checkpoint")
            raise NoAnchorCheckpoint(path)
        return path_state.checkpoint_sequence

    def _check_order(self, path: str, timestamp: int, latest: Optional[int]):
        if latest is not None and timestamp < latest:
            if self.db.metrics:
                self.db.metrics.increment_rejected("out_of_order")
            raise OutOfOrderTimestamp(path, timestamp, latest)

    def has_checkpoint(self, path: str) -> bool:
        row = self.db.query_one(
            "SELECT 1 FROM checkpoints WHERE session_id = ? AND path = ? LIMIT 1",
            (self.session.id, path),
        )
        return row is not None

    def latest_checkpoint_before(self, path: str, timestamp: int) -> Optional[Checkpoint]:
        """Latest checkpoint of the path with timestamp <= the target."""
        row = self.db.query_one(
            f"""
            SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints
            WHERE session_id = ? AND path = ? AND timestamp <= ?
            ORDER BY timestamp DESC, sequence DESC
            LIMIT 1
            """,
            (self.session.id, path, int(timestamp)),
        )
        return _row_to_checkpoint(row) if row else None

    def next_checkpoint_after(self, path: str, sequence: int) -> Optional[Checkpoint]:
        row = self.db.query_one(
            f"""
            SELECT {_CHECKPOINT_COLUMNS} FROM checkpoints
            WHERE session_id = ? AND path = ? AND sequence > ?
            ORDER BY sequence ASC
            LIMIT 1
            """,
            (self.session.id, path, sequence),
        )
        return _row_to_checkpoint(row) if row else None

    def diffs_between(
        self,
        path: str,
        from_sequence: int,
        to_sequence: Optional[int] = None,
        max_timestamp: Optional[int] = None,
    ) -> List[Diff]:
        """
        Diffs of a path with from_sequence < sequence <= to_sequence.

        Args:
            path: File path
            from_sequence: Exclusive lower bound
            to_sequence: Inclusive upper bound, None for no bound
            max_timestamp: Optional inclusive timestamp bound

        Returns:
            Diffs ordered by sequence
        """
        query = f"""
            SELECT {_DIFF_COLUMNS} FROM diffs
            WHERE session_id = ? AND path = ? AND sequence > ?
        """
        params: List[Any] = [self.session.id, path, from_sequence]

        if to_sequence is not None:
            query += " AND sequence <= ?"
            params.append(to_sequence)
        if max_timestamp is not None:
            query += " AND timestamp <= ?"
            params.append(int(max_timestamp))

        query += " ORDER BY sequence ASC"
        return [_row_to_diff(row) for row in self.db.query(query, tuple(params))]

    def checkpoints(self, path: str) -> List[Checkpoint]:
        """Checkpoint history of a path, content omitted."""
        rows = self.db.query(
            """
            SELECT session_id, sequence, path, timestamp, '' AS content, content_hash, size
            FROM checkpoints
            WHERE session_id = ? AND path = ?
            ORDER BY sequence ASC
            """,
            (self.session.id, path),
        )
        return [_row_to_checkpoint(row) for row in rows]

    def paths(self) -> Set[str]:
        rows = self.db.query(
            "SELECT DISTINCT path FROM checkpoints WHERE session_id = ?",
            (self.session.id,),
        )
        return {row["path"] for row in rows}

    def path_counts(self) -> Dict[str, Dict[str, int]]:
        """Checkpoint and diff counts per path."""
        counts: Dict[str, Dict[str, int]] = {}
        for table, key in (("checkpoints", "checkpoints"), ("diffs", "diffs")):
            rows = self.db.query(
                f"SELECT path, COUNT(*) AS n FROM {table} WHERE session_id = ? GROUP BY path",
                (self.session.id,),
            )
            for row in rows:
                counts.setdefault(row["path"], {"checkpoints": 0, "diffs": 0})[key] = row["n"]
        return counts
