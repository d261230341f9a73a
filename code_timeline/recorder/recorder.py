"""
Session recorder.

Turns file changes and terminal commands into events, checkpoints and
diffs for one recording session, and flags failures and test runs with
automatic bookmarks.
"""

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from code_timeline.shared.errors import ContentTooLarge, SessionClosed
from code_timeline.shared.patches import get_patcher
from code_timeline.shared.protocol import BookmarkKind, EventKind, Session, byte_size, now_ms
from code_timeline.server.timeline import CheckpointStore, EventLog, TimelineDatabase
from .change_detector import ChangeDetector, PollingChangeDetector

logger = logging.getLogger(__name__)

TEST_COMMAND = re.compile(
    r"(^|[\s;&|])("
    r"pytest|tox|nox|jest|mocha|vitest|"
    r"python3? -m (pytest|unittest)|"
    r"(npm|yarn|pnpm)( run)? test|"
    r"go test|cargo test|mvn test|gradle test|make test|dotnet test"
    r")\b"
)


@dataclass
class RecorderConfig:
    poll_interval_s: float = 0.5
    # Files above this are not read at all
    max_file_bytes: int = 1_000_000
    # A path gets a fresh checkpoint after this many diffs...
    checkpoint_every_changes: int = 50
    # ...or this long after its last checkpoint
    checkpoint_interval_s: float = 300.0
    # Checkpoint files already present when recording starts
    capture_initial: bool = True
    # Terminal output kept per command
    max_output_chars: int = 10_000
    record_git: bool = True


@dataclass
class PathTracker:
    """What the recorder last stored for a path."""
    content: Optional[str] = None  # None until a checkpoint is accepted
    checkpoint_timestamp: int = 0
    diffs_since_checkpoint: int = 0


def is_test_command(command: str) -> bool:
    return bool(TEST_COMMAND.search(command.strip()))


def git_info(root_path: str) -> Tuple[Optional[str], Optional[str]]:
    """Current branch and commit of the repository at root_path, if any."""

    def run_git(*args) -> Optional[str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=root_path,
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"git {' '.join(args)} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    return run_git("rev-parse", "--abbrev-ref", "HEAD"), run_git("rev-parse", "HEAD")


class SessionRecorder:
    """
    Records one session into a TimelineDatabase.

    Each path's content is stored as a checkpoint on first capture and
    as diffs against the previous capture after that. A fresh checkpoint
    is taken every ``checkpoint_every_changes`` diffs or every
    ``checkpoint_interval_s``, which bounds how many diffs a
    reconstruction has to apply.
    """

    def __init__(
        self,
        database: TimelineDatabase,
        config: Optional[RecorderConfig] = None,
        detector: Optional[ChangeDetector] = None,
    ):
        self.db = database
        self.config = config or RecorderConfig()
        self.detector = detector
        self.patcher = get_patcher()

        self.session: Optional[Session] = None
        self.event_log: Optional[EventLog] = None
        self.checkpoints: Optional[CheckpointStore] = None

        self._paths: Dict[str, PathTracker] = {}
        # Detector thread and terminal hooks share the trackers
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self.session is not None

    def start(self, root_path: str, name: Optional[str] = None, watch: bool = True) -> Session:
        """
        Open a session for root_path and start watching it.

        Raises:
            SessionAlreadyOpen: another session is being recorded
        """
        root_path = str(Path(root_path).resolve())
        git_branch, git_commit = git_info(root_path) if self.config.record_git else (None, None)

        self.session = self.db.start_session(
            root_path,
            name=name,
            git_branch=git_branch,
            git_commit=git_commit,
        )
        self.event_log = EventLog(self.db, self.session)
        self.checkpoints = CheckpointStore(
            self.db, self.session, max_content_bytes=self.db.config.max_content_bytes
        )
        self._paths = {}

        if watch:
            if self.detector is None:
                self.detector = PollingChangeDetector(
                    root_path,
                    poll_interval_s=self.config.poll_interval_s,
                    max_file_bytes=self.config.max_file_bytes,
                )
            if self.config.capture_initial and isinstance(self.detector, PollingChangeDetector):
                self._capture_baseline(self.detector.prime())
            self.detector.start(self.on_file_changed)

        branch = f" on {git_branch}" if git_branch else ""
        logger.info(f"Recording session {self.session.id} in {root_path}{branch}")
        return self.session

    def stop(self) -> Optional[Session]:
        """Stop watching and close the session."""
        if self.detector:
            self.detector.stop()

        if self.session is None:
            return None

        session = self.db.end_session(self.session)
        logger.info(f"Session {session.id} recorded {self.event_log.count()} events")

        self.session = None
        self.event_log = None
        self.checkpoints = None
        return session

    def _require_session(self) -> Session:
        if self.session is None:
            raise SessionClosed(0)
        return self.session

    def _capture_baseline(self, contents: Dict[str, str]):
        timestamp = now_ms()
        for path, content in sorted(contents.items()):
            tracker = PathTracker()
            try:
                self.checkpoints.put_checkpoint(path, content, timestamp)
                tracker.content = content
                tracker.checkpoint_timestamp = timestamp
            except ContentTooLarge as e:
                logger.warning(f"Baseline not captured: {e}")
            self._paths[path] = tracker
        logger.info(f"Captured baseline of {len(contents)} files")

    # ==================== File changes ====================

    def on_file_changed(self, path: str, content: Optional[str], timestamp: Optional[int] = None) -> Optional[int]:
        """
        Record a file change. ``content`` is None when the file was deleted.

        Returns:
            Sequence number of the event, or None if nothing changed
        """
        self._require_session()
        timestamp = int(timestamp) if timestamp is not None else now_ms()

        with self._lock:
            tracker = self._paths.get(path)

            if content is None:
                self._paths.pop(path, None)
                sequence = self.event_log.append(EventKind.DELETE, path, {}, timestamp)
                logger.info(f"File deleted: {path}")
                return sequence

            if tracker is not None and tracker.content == content:
                return None

            kind = EventKind.CREATE if tracker is None else EventKind.EDIT
            if tracker is None:
                tracker = self._paths[path] = PathTracker()

            captured = self._store_content(path, content, timestamp, tracker)
            payload = {
                "size": byte_size(content),
                "lines": content.count("\n") + 1,
                "content_captured": captured,
            }
            sequence = self.event_log.append(kind, path, payload, timestamp)

        logger.debug(f"File {kind.value}: {path}")
        return sequence

    def _needs_checkpoint(self, tracker: PathTracker, timestamp: int) -> bool:
        if tracker.content is None:
            return True
        if tracker.diffs_since_checkpoint >= self.config.checkpoint_every_changes:
            return True
        return timestamp - tracker.checkpoint_timestamp >= self.config.checkpoint_interval_s * 1000

    def _store_content(self, path: str, content: str, timestamp: int, tracker: PathTracker) -> bool:
        """Write a checkpoint or a diff. Returns False if the content was refused."""
        if self._needs_checkpoint(tracker, timestamp):
            try:
                self.checkpoints.put_checkpoint(path, content, timestamp)
            except ContentTooLarge as e:
                logger.warning(f"Content not captured: {e}")
                # The next change must start from a new checkpoint
                tracker.content = None
                return False
            tracker.content = content
            tracker.checkpoint_timestamp = timestamp
            tracker.diffs_since_checkpoint = 0
            return True

        patch = self.patcher.make(tracker.content, content)
        self.checkpoints.put_diff(path, patch, timestamp, self.patcher.stats(patch))
        tracker.content = content
        tracker.diffs_since_checkpoint += 1
        return True

    # ==================== Terminal ====================

    def on_terminal_command(
        self,
        terminal_id: str,
        command: str,
        output: str = "",
        timestamp: Optional[int] = None,
        exit_code: Optional[int] = None,
    ) -> int:
        """
        Record a terminal command.

        A non-zero exit code adds an auto_error bookmark; a test command
        adds an auto_test bookmark.
        """
        self._require_session()
        timestamp = int(timestamp) if timestamp is not None else now_ms()
        output = output or ""
        truncated = len(output) > self.config.max_output_chars

        payload = {
            "command": command,
            "output": output[-self.config.max_output_chars:] if truncated else output,
            "exit_code": exit_code,
        }
        if truncated:
            payload["output_truncated"] = True

        sequence = self.event_log.append(EventKind.TERMINAL, terminal_id, payload, timestamp)

        if exit_code not in (None, 0):
            self.event_log.add_bookmark(
                f"Command failed: {command}",
                kind=BookmarkKind.AUTO_ERROR,
                timestamp=timestamp,
                description=f"Exit code {exit_code}",
            )

        if is_test_command(command):
            result = "" if exit_code is None else (" (passed)" if exit_code == 0 else " (failed)")
            self.event_log.add_bookmark(
                f"Tests: {command}{result}",
                kind=BookmarkKind.AUTO_TEST,
                timestamp=timestamp,
            )

        return sequence

    # ==================== Bookmarks ====================

    def add_bookmark(
        self,
        title: str,
        description: Optional[str] = None,
        timestamp: Optional[int] = None,
    ) -> int:
        self._require_session()
        return self.event_log.add_bookmark(
            title,
            kind=BookmarkKind.MANUAL,
            timestamp=timestamp,
            description=description,
        )
