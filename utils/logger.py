"""
Logging helpers shared by every module.

Usage:
    from utils.logger import get_logger
    logger = get_logger(__name__)
"""
import logging
import os
import sys
from typing import Optional

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


class ColorFormatter(logging.Formatter):
    """Formatter that wraps the level name in ANSI colors (xterm)."""

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno)
        if not color:
            return message
        return f"{color}{message}{self.RESET}"


def _build_formatter(color_mode: str) -> logging.Formatter:
    if color_mode in ("ansi", "xterm"):
        return ColorFormatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)
    return logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)


def configure_logging(level: Optional[str] = None, color_mode: str = "none") -> None:
    """Install a single stream handler on the root logger.

    Safe to call more than once; later calls replace the formatter and level,
    which is how a pipeline's log-color option is applied at run start.
    """
    global _configured

    root = logging.getLogger()
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    handler = None
    for existing in root.handlers:
        if getattr(existing, "_pipeline_handler", False):
            handler = existing
            break

    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler._pipeline_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    handler.setFormatter(_build_formatter(color_mode))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger, configuring the root logger on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
