# Session timeline store, reconstruction and playback
from .database import (
    TimelineDatabase,
    StoreConfig,
    Durability,
)
from .event_log import EventLog
from .checkpoint_store import CheckpointStore
from .reconstruction import ReconstructionEngine, FileState
from .playback import (
    PlaybackEngine,
    PlaybackSession,
    PlaybackState,
    PlaybackConfig,
    SeekPolicy,
)

__all__ = [
    "TimelineDatabase",
    "StoreConfig",
    "Durability",
    "EventLog",
    "CheckpointStore",
    "ReconstructionEngine",
    "FileState",
    "PlaybackEngine",
    "PlaybackSession",
    "PlaybackState",
    "PlaybackConfig",
    "SeekPolicy",
]
