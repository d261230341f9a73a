"""Code Timeline Server Module"""

from code_timeline.server.timeline import (
    TimelineDatabase,
    StoreConfig,
    EventLog,
    CheckpointStore,
    ReconstructionEngine,
    PlaybackEngine,
    PlaybackConfig,
)
from code_timeline.server.service import TimelineService

__all__ = [
    "TimelineDatabase", "StoreConfig",
    "EventLog", "CheckpointStore", "ReconstructionEngine",
    "PlaybackEngine", "PlaybackConfig",
    "TimelineService",
]
