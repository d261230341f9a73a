"""
Query and playback control for one recorded session.

This is the surface the API layer talks to; it never writes.
"""

from typing import Any, Dict, List, Optional
import logging

from code_timeline.shared.errors import InvalidSeekTarget, SessionNotFound
from code_timeline.shared.metrics import TimelineMetricsCollector
from code_timeline.shared.protocol import Bookmark, Event, EventKind, FileSummary, Session
from code_timeline.server.timeline import (
    CheckpointStore,
    EventLog,
    FileState,
    PlaybackConfig,
    PlaybackEngine,
    ReconstructionEngine,
    TimelineDatabase,
)
from code_timeline.server.timeline.playback import CompletionCallback, EventCallback

logger = logging.getLogger(__name__)


class TimelineService:
    """Read-only view over a session plus its playback sessions."""

    def __init__(
        self,
        database: TimelineDatabase,
        session: Session,
        playback_config: Optional[PlaybackConfig] = None,
        metrics: Optional[TimelineMetricsCollector] = None,
    ):
        self.db = database
        self.session = session
        self.event_log = EventLog(database, session)
        self.checkpoints = CheckpointStore(
            database, session, max_content_bytes=database.config.max_content_bytes
        )
        self.reconstruction = ReconstructionEngine(self.checkpoints)
        self.playback = PlaybackEngine(self.event_log, playback_config, metrics)

    @classmethod
    def for_session(
        cls,
        database: TimelineDatabase,
        session_id: Optional[int] = None,
        playback_config: Optional[PlaybackConfig] = None,
        metrics: Optional[TimelineMetricsCollector] = None,
    ) -> "TimelineService":
        """Service for a session id, or the most recent session if None."""
        if session_id is None:
            session = database.latest_session()
            if session is None:
                raise SessionNotFound(0)
        else:
            session = database.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id)

        return cls(database, session, playback_config, metrics)

    # ==================== Queries ====================

    def get_session(self) -> Session:
        """Session metadata, re-read so a recording that ended shows its end time."""
        return self.db.get_session(self.session.id) or self.session

    def get_events(
        self,
        from_timestamp: Optional[int] = None,
        to_timestamp: Optional[int] = None,
        kind: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Event]:
        kinds = [EventKind(kind)] if kind else None
        return self.event_log.range(from_timestamp, to_timestamp, kinds=kinds, limit=limit)

    def get_files(self) -> List[FileSummary]:
        """Tracked paths with their change counts."""
        changes = self.event_log.source_change_counts()
        content = self.checkpoints.path_counts()

        files = []
        for path in sorted(set(changes) | set(content)):
            change_info = changes.get(path, {})
            content_info = content.get(path, {})
            files.append(FileSummary(
                path=path,
                changes=change_info.get("changes", 0),
                checkpoints=content_info.get("checkpoints", 0),
                diffs=content_info.get("diffs", 0),
                last_timestamp=change_info.get("last_timestamp"),
            ))
        return files

    def get_content_at(self, path: str, timestamp: int) -> Optional[str]:
        return self.reconstruction.content_at(path, timestamp)

    def get_file_state_at(self, path: str, timestamp: int) -> Optional[FileState]:
        return self.reconstruction.file_state_at(path, timestamp)

    def get_file_history(self, path: str) -> Dict[str, Any]:
        """Checkpoint and diff metadata for a path, in sequence order."""
        return {
            "path": path,
            "checkpoints": [c.to_dict(include_content=False) for c in self.checkpoints.checkpoints(path)],
            "diffs": [d.to_dict(include_patch=False) for d in self.checkpoints.diffs_between(path, 0)],
        }

    def get_bookmarks(self) -> List[Bookmark]:
        return self.event_log.bookmarks()

    def get_timeline(self, bucket_ms: int = 60_000) -> Dict[str, Any]:
        start, end = self.playback.bounds()
        return {
            "session": self.get_session().to_dict(),
            "start_time": start,
            "end_time": end,
            "buckets": self.playback.get_timeline(bucket_ms),
            "bookmarks": [b.to_dict() for b in self.get_bookmarks()],
        }

    # ==================== Playback control ====================

    async def start_playback(
        self,
        from_timestamp: Optional[float] = None,
        speed: Optional[float] = None,
        on_event: Optional[EventCallback] = None,
        on_complete: Optional[CompletionCallback] = None,
        kinds: Optional[List[EventKind]] = None,
    ) -> str:
        """
        Start a new playback session.

        Returns:
            The playback id used by the other control calls
        """
        playback = self.playback.create_session(speed=speed, kinds=kinds)
        if on_event:
            self.playback.add_callback(playback.playback_id, on_event)
        if on_complete:
            self.playback.add_completion_callback(playback.playback_id, on_complete)

        try:
            await self.playback.play(playback.playback_id, from_timestamp=from_timestamp)
        except InvalidSeekTarget:
            await self.playback.delete_session(playback.playback_id)
            raise
        return playback.playback_id

    async def pause_playback(self, playback_id: str):
        await self.playback.pause(playback_id)

    async def resume_playback(self, playback_id: str):
        await self.playback.resume(playback_id)

    async def seek_playback(self, playback_id: str, timestamp: float) -> List[Event]:
        return await self.playback.seek(playback_id, timestamp)

    async def stop_playback(self, playback_id: str):
        """Cancel playback and release the session."""
        await self.playback.cancel(playback_id)
        await self.playback.delete_session(playback_id)

    async def close(self):
        await self.playback.shutdown()
