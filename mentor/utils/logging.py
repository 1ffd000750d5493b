# mentor/utils/logging.py

import logging
import os
from pathlib import Path
from typing import Optional

from mentor.config.settings import BASE_DIR

LOG_DIR = Path(os.getenv("MENTOR_LOG_DIR", "").strip() or (BASE_DIR / "logs"))
LOG_FILE = LOG_DIR / "mentor.log"

# MENTOR_LOG_FILE=0 keeps logs on the console only (containers, tests)
LOG_TO_FILE = os.getenv("MENTOR_LOG_FILE", "1").strip().lower() not in ("0", "false", "no")
LOG_LEVEL = logging.getLevelName(os.getenv("MENTOR_LOG_LEVEL", "INFO").strip().upper())
if not isinstance(LOG_LEVEL, int):
    LOG_LEVEL = logging.INFO

_FORMATTER = logging.Formatter(
    "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_file_handler: Optional[logging.Handler] = None


def _shared_file_handler() -> logging.Handler:
    # One handle on mentor.log for every module logger
    global _file_handler
    if _file_handler is None:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        _file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
        _file_handler.setLevel(LOG_LEVEL)
        _file_handler.setFormatter(_FORMATTER)
    return _file_handler


def get_logger(name: str = "mentor") -> logging.Logger:
    """
    Return a logger that logs to the console and, unless disabled, to
    logs/mentor.log. Repeated calls never stack handlers.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL)
    logger.propagate = False

    ch = logging.StreamHandler()
    ch.setLevel(LOG_LEVEL)
    ch.setFormatter(_FORMATTER)
    logger.addHandler(ch)

    if LOG_TO_FILE:
        logger.addHandler(_shared_file_handler())
    return logger


def short_id(value: str, keep: int = 8) -> str:
    """Log-safe prefix of an identifier (never log full subject ids or tokens)."""
    value = value or ""
    if len(value) <= keep:
        return value
    return value[:keep] + "..."
