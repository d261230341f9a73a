#!/usr/bin/env python3
"""
Code Timeline Recorder - Main Application

Records file changes under a project directory until interrupted.
"""

import argparse
import logging
import signal
import sys
import time

from code_timeline.shared.config import load_config, setup_logging
from code_timeline.shared.errors import TimelineError
from code_timeline.shared.metrics import MetricsRegistry, TimelineMetricsCollector
from code_timeline.server.timeline import StoreConfig, TimelineDatabase
from .recorder import RecorderConfig, SessionRecorder

logger = logging.getLogger(__name__)


class TimelineRecorder:
    """Recorder application."""

    def __init__(self, config_path: str):
        self.config = load_config(config_path)
        setup_logging(self.config.get("logging", {}))

        self.metrics_collector = TimelineMetricsCollector(registry=MetricsRegistry())
        self.database = TimelineDatabase(
            StoreConfig(**self.config.get("store", {})),
            metrics=self.metrics_collector,
        )
        self.recorder = SessionRecorder(
            self.database,
            RecorderConfig(**self.config.get("recorder", {})),
        )
        self._running = False
        self._stopped = False

    def start(self, root_path: str, name=None, close_stale: bool = False):
        stale = self.database.open_session()
        if stale and close_stale:
            logger.warning(f"Closing session {stale.id} left open by a previous run")
            self.database.end_session(stale)

        self._running = True
        self.recorder.start(root_path, name=name)

    def stop(self):
        """Close the session and the store."""
        if self._stopped:
            return
        self._stopped = True
        self._running = False

        session = self.recorder.stop()
        self.database.close()
        if session:
            logger.info(f"Session {session.id} saved ({session.duration_ms() / 1000:.0f}s)")

    def run(self, root_path: str, name=None, close_stale: bool = False):
        """Record until stopped."""
        try:
            self.start(root_path, name, close_stale)
            while self._running:
                time.sleep(1)
        finally:
            self.stop()


def main():
    parser = argparse.ArgumentParser(description="Code Timeline Recorder")
    parser.add_argument(
        "path",
        nargs="?",
        default=".",
        help="Project directory to record",
    )
    parser.add_argument(
        "-c", "--config",
        default="config/config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-n", "--name",
        help="Session name",
    )
    parser.add_argument(
        "--close-stale",
        action="store_true",
        help="End a session left open by a previous run before starting",
    )

    args = parser.parse_args()

    recorder = TimelineRecorder(args.config)

    # Handle signals
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        recorder.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        recorder.run(args.path, args.name, args.close_stale)
    except TimelineError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
