from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(logger_name: str = "aonui") -> logging.Logger:
    """Attach stream and optional rotating file handlers to ``logger_name`` once.

    The level comes from LOG_LEVEL (or AONUI_LOG_LEVEL); a file handler is only
    added when AONUI_LOG_FILE names a path.
    """
    level_name = os.getenv("LOG_LEVEL", os.getenv("AONUI_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("AONUI_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger
