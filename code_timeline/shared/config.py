"""
YAML configuration loading and logging setup shared by the entry points.
"""

from logging.handlers import RotatingFileHandler
from pathlib import Path
import logging

import yaml

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file; a missing file means defaults."""
    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(config_file) as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def setup_logging(log_config: dict):
    """Configure root logging from the ``logging:`` config section."""
    level = getattr(logging, log_config.get("level", "INFO").upper())

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )

    # Add file handler if configured
    log_file = log_config.get("file")
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            log_file,
            maxBytes=log_config.get("max_size_mb", 50) * 1024 * 1024,
            backupCount=log_config.get("backup_count", 5),
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
