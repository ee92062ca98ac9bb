"""Rotating file logging for printlink.

Wire traffic is mirrored to the ``printlink.serial`` logger (tx/rx at
DEBUG), so run with ``PRINTLINK_LOG_LEVEL=DEBUG`` to capture a full
session transcript.

Only stdlib modules are used.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".printlink", "logs")

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    log_dir: str | None = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: str | None = None,
) -> str:
    """Install a rotating file handler on the root logger (once).

    :param log_dir: Directory for log files.  Reads ``PRINTLINK_LOG_DIR``
        env var, then falls back to ``~/.printlink/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 10 MB).
    :param backup_count: Number of rotated log files to keep (default 5).
    :param level: Log level string.  Reads ``PRINTLINK_LOG_LEVEL`` env var,
        then falls back to ``"INFO"``.
    :returns: Path of the log file.
    """
    log_dir = log_dir or os.environ.get("PRINTLINK_LOG_DIR", _DEFAULT_LOG_DIR)
    level = level or os.environ.get("PRINTLINK_LOG_LEVEL", "INFO")

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "printlink.log")

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)

    has_rotating = any(isinstance(h, RotatingFileHandler) for h in root.handlers)
    if not has_rotating:
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(file_handler)
    return log_path
