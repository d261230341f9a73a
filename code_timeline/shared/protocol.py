"""
Shared data model for Code Timeline.
Defines the records written by the recorder and read by playback.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple
import hashlib
import time


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def fingerprint(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def byte_size(content: str) -> int:
    return len(content.encode("utf-8"))


class EventKind(Enum):
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    RENAME = "rename"
    TERMINAL = "terminal"
    BOOKMARK = "bookmark"


# File events carry a path as their source
FILE_EVENT_KINDS = (EventKind.EDIT, EventKind.CREATE, EventKind.DELETE, EventKind.RENAME)


class BookmarkKind(Enum):
    MANUAL = "manual"
    AUTO_ERROR = "auto_error"  # Failing terminal command
    AUTO_TEST = "auto_test"    # Test run


@dataclass
class Session:
    id: int
    root_path: str
    start_time: int
    end_time: Optional[int] = None
    name: Optional[str] = None
    git_branch: Optional[str] = None
    git_commit: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "root_path": self.root_path,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "name": self.name,
            "git_branch": self.git_branch,
            "git_commit": self.git_commit,
            "is_open": self.is_open,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            root_path=data["root_path"],
            start_time=data["start_time"],
            end_time=data.get("end_time"),
            name=data.get("name"),
            git_branch=data.get("git_branch"),
            git_commit=data.get("git_commit"),
        )


@dataclass(frozen=True)
class Event:
    """An immutable, sequenced fact about the recorded workspace."""
    session_id: int
    sequence: int
    timestamp: int
    kind: EventKind
    source: str
    payload: dict = field(default_factory=dict)

    @property
    def sort_key(self) -> Tuple[int, int]:
        # Sequence breaks timestamp ties
        return (self.timestamp, self.sequence)

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "source": self.source,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            session_id=data["session_id"],
            sequence=data["sequence"],
            timestamp=data["timestamp"],
            kind=EventKind(data["kind"]),
            source=data["source"],
            payload=data.get("payload", {}),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Full captured content of one path at one moment."""
    session_id: int
    path: str
    sequence: int
    timestamp: int
    content: str
    content_hash: str
    size: int

    def to_dict(self, include_content: bool = True) -> dict:
        data = {
            "session_id": self.session_id,
            "path": self.path,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "content_hash": self.content_hash,
            "size": self.size,
        }
        if include_content:
            data["content"] = self.content
        return data


@dataclass(frozen=True)
class Diff:
    """Incremental patch anchored to the preceding checkpoint of its path."""
    session_id: int
    path: str
    sequence: int
    timestamp: int
    anchor_sequence: int
    patch: Any
    chars_added: int = 0
    chars_removed: int = 0
    lines_added: int = 0
    lines_removed: int = 0

    def to_dict(self, include_patch: bool = True) -> dict:
        data = {
            "session_id": self.session_id,
            "path": self.path,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "anchor_sequence": self.anchor_sequence,
            "chars_added": self.chars_added,
            "chars_removed": self.chars_removed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
        }
        if include_patch:
            data["patch"] = self.patch
        return data


@dataclass
class Bookmark:
    session_id: int
    sequence: int  # Sequence of the bookmark event in the event log
    timestamp: int
    title: str
    kind: str = BookmarkKind.MANUAL.value
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "title": self.title,
            "kind": self.kind,
            "description": self.description,
        }


@dataclass
class FileSummary:
    path: str
    changes: int
    checkpoints: int
    diffs: int
    last_timestamp: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "changes": self.changes,
            "checkpoints": self.checkpoints,
            "diffs": self.diffs,
            "last_timestamp": self.last_timestamp,
        }
