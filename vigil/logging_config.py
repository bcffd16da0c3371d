"""Console and file logging for vigil.

Modules call ``get_logger(__name__)`` once at import time. Each named logger
gets its own handlers, a shared line format, and the level from
``LOG_LEVEL`` (see :mod:`vigil.config`).

Line format:
    2026-01-05 09:12:44 | INFO     | vigil.store | Loaded 12 embedding(s) ...
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """Highlights level and logger name with ANSI colours.

    Colouring is decided once, from the stream the owning handler writes to,
    so redirected output stays plain.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"

    def __init__(self, use_color: bool, fmt: str = LOG_FORMAT, datefmt: str = DATE_FORMAT):
        super().__init__(fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return super().format(record)

        # Other handlers receive the same record object
        tinted = logging.makeLogRecord(record.__dict__)
        tinted.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        tinted.name = f"{self.BOLD}{record.name}{self.RESET}"
        return super().format(tinted)


def _resolve_level(level: Optional[str]) -> int:
    if level is None:
        from vigil.config import get_config

        try:
            level = get_config().log_level
        except ValueError:
            # A bad setting is reported by whoever loads the config
            level = "INFO"
    return getattr(logging, level.upper(), logging.INFO)


def _console_handler(level: int, stream: TextIO = sys.stdout) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    is_tty = hasattr(stream, "isatty") and stream.isatty()
    handler.setFormatter(ColoredFormatter(use_color=is_tty))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    name: str = "vigil",
    level: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Return the named logger, attaching handlers on first use.

    Args:
        name: Logger name, normally the calling module's ``__name__``.
        level: Level name such as "DEBUG". Defaults to ``LOG_LEVEL`` from the
               environment, or INFO if the environment is invalid.
        log_file: Also append plain (uncoloured) lines to this file.

    Returns:
        The configured logger. Later calls with the same name return it
        unchanged, whatever arguments they pass.

    Example:
        >>> logger = setup_logging("vigil.ingest", level="DEBUG", log_file="ingest.log")
        >>> logger.debug("Fetched 40 URLs")
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    resolved = _resolve_level(level)
    logger.setLevel(resolved)
    logger.addHandler(_console_handler(resolved))
    if log_file:
        logger.addHandler(_file_handler(log_file, resolved))

    # Handlers live on each named logger; the root logger would print twice
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Module-level logger, configured from the environment."""
    return setup_logging(name)
