"""The ``chatrelay`` logger: stderr always, plus a rotating file when ``log_file`` is set."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatrelay.config.settings import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _file_handler(path: str, formatter: logging.Formatter) -> logging.Handler | None:
    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            target,
            maxBytes=max(0, settings.log_file_max_bytes),
            backupCount=max(0, settings.log_file_backup_count),
            encoding="utf-8",
        )
    except OSError as exc:
        logging.getLogger("chatrelay").warning("log file disabled path=%s error=%s", path, exc)
        return None
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    relay_logger = logging.getLogger("chatrelay")
    if relay_logger.handlers:
        return relay_logger

    level = logging.getLevelName(str(settings.log_level or "INFO").strip().upper())
    relay_logger.setLevel(level if isinstance(level, int) else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    stderr = logging.StreamHandler()
    stderr.setFormatter(formatter)
    relay_logger.addHandler(stderr)

    if settings.log_file:
        handler = _file_handler(settings.log_file, formatter)
        if handler is not None:
            relay_logger.addHandler(handler)

    relay_logger.propagate = False
    return relay_logger


logger = _build_logger()
