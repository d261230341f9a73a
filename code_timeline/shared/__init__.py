from .protocol import (
    EventKind,
    BookmarkKind,
    FILE_EVENT_KINDS,
    Session,
    Event,
    Checkpoint,
    Diff,
    Bookmark,
    FileSummary,
    now_ms,
    fingerprint,
)
from .errors import (
    TimelineError,
    StorageFull,
    SessionClosed,
    SessionAlreadyOpen,
    SessionNotFound,
    ContentTooLarge,
    NoAnchorCheckpoint,
    OutOfOrderTimestamp,
    ReconstructionFailed,
    InvalidSeekTarget,
)

__all__ = [
    "EventKind",
    "BookmarkKind",
    "FILE_EVENT_KINDS",
    "Session",
    "Event",
    "Checkpoint",
    "Diff",
    "Bookmark",
    "FileSummary",
    "now_ms",
    "fingerprint",
    "TimelineError",
    "StorageFull",
    "SessionClosed",
    "SessionAlreadyOpen",
    "SessionNotFound",
    "ContentTooLarge",
    "NoAnchorCheckpoint",
    "OutOfOrderTimestamp",
    "ReconstructionFailed",
    "InvalidSeekTarget",
]
