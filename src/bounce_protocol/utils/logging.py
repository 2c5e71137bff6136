"""Logging configuration for the bounce CLI."""

import logging
import os
from pathlib import Path
from typing import Optional

from bounce_protocol.constants import LOG_FILE

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> Path:
    """Configure the root logger with a console and a file handler.

    Args:
        level: Level name; defaults to ``BOUNCE_LOG_LEVEL`` or WARNING.
        log_file: Log file path; defaults to the file under ``LOG_DIR``.

    Returns:
        Path of the log file in use.
    """
    level_name = (level or os.getenv("BOUNCE_LOG_LEVEL", "WARNING")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.WARNING

    log_file = Path(log_file) if log_file else LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    # The file always keeps INFO and above for post-mortem reading
    file_handler.setLevel(min(log_level, logging.INFO))
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.setLevel(min(log_level, logging.INFO))

    return log_file
