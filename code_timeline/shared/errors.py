"""
Errors raised by the timeline store, reconstruction and playback.

Write-path errors are raised before a sequence number is reserved, so a
rejected write never leaves a gap or touches persisted entries.
"""

from typing import Optional


class TimelineError(Exception):
    """Base class for all timeline errors."""


class StorageFull(TimelineError):
    """The store would exceed its configured byte ceiling."""

    def __init__(self, requested: int, used: int, limit: int):
        self.requested = requested
        self.used = used
        self.limit = limit
        super().__init__(
            f"Storage ceiling reached: {used} + {requested} bytes exceeds {limit}"
        )


class SessionClosed(TimelineError):
    """Write attempted against a session that has already ended."""

    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is closed")


class SessionAlreadyOpen(TimelineError):
    """Only one session may be open per store."""

    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is still open")


class SessionNotFound(TimelineError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ContentTooLarge(TimelineError):
    """Captured content is above the checkpoint size cap."""

    def __init__(self, path: str, size: int, limit: int):
        self.path = path
        self.size = size
        self.limit = limit
        super().__init__(f"Content for {path} is {size} bytes, limit is {limit}")


class NoAnchorCheckpoint(TimelineError):
    """A diff was written for a path with no checkpoint in the session."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No checkpoint to anchor a diff for {path}")


class OutOfOrderTimestamp(TimelineError, ValueError):
    """A content record is older than the latest record of its path."""

    def __init__(self, path: str, timestamp: int, latest: int):
        self.path = path
        self.timestamp = timestamp
        self.latest = latest
        super().__init__(
            f"Timestamp {timestamp} for {path} is before latest record at {latest}"
        )


class ReconstructionFailed(TimelineError):
    """A diff could not be applied while rebuilding a path's content."""

    def __init__(self, path: str, sequence: Optional[int], reason: str):
        self.path = path
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"Cannot reconstruct {path} at diff {sequence}: {reason}")


class InvalidSeekTarget(TimelineError, ValueError):
    """Seek target lies outside the session bounds."""

    def __init__(self, timestamp: float, bounds: tuple):
        self.timestamp = timestamp
        self.bounds = bounds
        super().__init__(
            f"Seek target {timestamp} is outside session bounds {bounds[0]}..{bounds[1]}"
        )
