"""
Tests for configuration loading.
"""

import logging

from code_timeline.shared.config import load_config, setup_logging
from code_timeline.server.timeline import PlaybackConfig, StoreConfig
from code_timeline.recorder import RecorderConfig


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(str(tmp_path / "missing.yaml")) == {}

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(str(path)) == {}

    def test_sections_build_dataclass_configs(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "store:\n"
            "  db_path: /tmp/t.db\n"
            "  durability: buffered\n"
            "  max_bytes: 1000\n"
            "playback:\n"
            "  seek_policy: reject\n"
            "recorder:\n"
            "  checkpoint_every_changes: 10\n"
        )
        config = load_config(str(path))

        store = StoreConfig(**config.get("store", {}))
        playback = PlaybackConfig(**config.get("playback", {}))
        recorder = RecorderConfig(**config.get("recorder", {}))

        assert store.durability == "buffered"
        assert store.max_bytes == 1000
        assert store.max_content_bytes == 100_000
        assert playback.seek_policy == "reject"
        assert recorder.checkpoint_every_changes == 10
        assert recorder.record_git is True


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_handler_added(self, tmp_path):
        log_file = tmp_path / "logs" / "timeline.log"
        root = logging.getLogger()
        before = list(root.handlers)

        try:
            setup_logging({"level": "debug", "file": str(log_file), "max_size_mb": 1})
            added = [h for h in root.handlers if h not in before]

            assert log_file.parent.is_dir()
            assert any(getattr(h, "baseFilename", None) == str(log_file) for h in added)
        finally:
            for handler in root.handlers:
                if handler not in before:
                    root.removeHandler(handler)
                    handler.close()
