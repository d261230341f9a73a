# Recording side: change detection and session capture
from .change_detector import ChangeDetector, PollingChangeDetector
from .recorder import RecorderConfig, SessionRecorder

__all__ = [
    "ChangeDetector",
    "PollingChangeDetector",
    "RecorderConfig",
    "SessionRecorder",
]
