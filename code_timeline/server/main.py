#!/usr/bin/env python3
"""
Code Timeline Server - Main Application

Serves a recorded session for querying and playback.
"""

import argparse
import logging
import signal
import sys
from datetime import datetime

import uvicorn

from code_timeline.shared.config import load_config, setup_logging
from code_timeline.shared.errors import TimelineError
from code_timeline.shared.metrics import (
    MetricsRegistry,
    TimelineMetricsCollector,
    create_exporter_from_config,
)
from code_timeline.server.api.server import create_app
from code_timeline.server.service import TimelineService
from code_timeline.server.timeline import PlaybackConfig, StoreConfig, TimelineDatabase

logger = logging.getLogger(__name__)


class TimelineServer:
    """Main server application."""

    def __init__(self, config_path: str):
        self.config = load_config(config_path)
        setup_logging(self.config.get("logging", {}))

        # Metrics
        self.metrics_registry = MetricsRegistry()
        self.metrics_collector = TimelineMetricsCollector(registry=self.metrics_registry)
        self.exporter = create_exporter_from_config(
            self.config.get("metrics", {}), registry=self.metrics_registry
        )

        self.database = TimelineDatabase(
            StoreConfig(**self.config.get("store", {})),
            metrics=self.metrics_collector,
        )
        self.playback_config = PlaybackConfig(**self.config.get("playback", {}))

    def list_sessions(self):
        """Print stored sessions."""
        sessions = self.database.list_sessions()
        if not sessions:
            print("No recorded sessions")
            return

        for session in sessions:
            started = datetime.fromtimestamp(session.start_time / 1000).strftime("%Y-%m-%d %H:%M:%S")
            if session.is_open:
                status = "recording"
            else:
                status = f"{session.duration_ms() / 1000:.0f}s"
            print(f"{session.id:>5}  {started}  {status:>10}  {session.name or ''}  {session.root_path}")

    def purge(self, session_id: int) -> int:
        deleted = self.database.purge_session(session_id)
        print(f"Purged session {session_id} ({deleted} records)")
        return deleted

    def run(self, session_id=None):
        """Serve a session until interrupted."""
        service = TimelineService.for_session(
            self.database,
            session_id,
            playback_config=self.playback_config,
            metrics=self.metrics_collector,
        )
        app = create_app(service, exporter=self.exporter)

        server_config = self.config.get("server", {})
        logger.info(f"Serving session {service.session.id} ({service.session.root_path})")

        try:
            uvicorn.run(
                app,
                host=server_config.get("host", "127.0.0.1"),
                port=server_config.get("port", 3000),
                log_level="info",
            )
        finally:
            self.stop()

    def stop(self):
        self.database.close()
        logger.info("Code Timeline Server stopped")


def main():
    parser = argparse.ArgumentParser(description="Code Timeline Server")
    parser.add_argument(
        "-c", "--config",
        default="config/config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--session",
        type=int,
        help="Session id to serve (defaults to the most recent)",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List recorded sessions and exit",
    )
    parser.add_argument(
        "--purge",
        type=int,
        metavar="SESSION_ID",
        help="Delete a closed session and exit",
    )

    args = parser.parse_args()

    server = TimelineServer(args.config)

    if args.list or args.purge is not None:
        try:
            if args.list:
                server.list_sessions()
            if args.purge is not None:
                server.purge(args.purge)
        except TimelineError as e:
            logger.error(str(e))
            sys.exit(1)
        finally:
            server.stop()
        return

    # Handle signals
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        server.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        server.run(args.session)
    except TimelineError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
