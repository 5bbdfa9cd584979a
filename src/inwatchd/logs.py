"""Logging setup and log file reopening."""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Union[int, str] = "INFO", log_file: Optional[Path] = None) -> None:
    """
    Configure the root logger.

    Args:
        level: Level name or number
        log_file: Append to this file instead of writing to stderr
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    handlers = None
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file, encoding="utf-8")]

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    # Suppress httpx logging
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def reopen_log_files(logger: Optional[logging.Logger] = None) -> int:
    """
    Point every file handler of ``logger`` (root by default) at a freshly
    opened file, so a log rotated away by an external tool is replaced.

    Returns:
        Number of handlers reopened
    """
    logger = logger or logging.getLogger()
    reopened = 0
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            continue
        stream = open(handler.baseFilename, handler.mode, encoding=handler.encoding)
        old = handler.setStream(stream)
        if old is not None:
            old.close()
        reopened += 1
    return reopened
