"""
Logging configuration and setup.

Every module logs under the ``runebook`` logger hierarchy so a single
``setup_logging`` call controls console and file output for the whole app.
Console logs go to stderr; stdout is reserved for command output such as
search results.
"""

import logging
import sys
from pathlib import Path
from typing import TextIO

from runebook.config.settings import Settings

ROOT_LOGGER_NAME = "runebook"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty dependencies, held at WARNING unless runebook itself runs at DEBUG
THIRD_PARTY_LOGGERS = ("chromadb", "httpx", "sentence_transformers", "LiteLLM", "urllib3")


class ColoredFormatter(logging.Formatter):
    """Colours the level name when writing to a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, datefmt: str, use_color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return super().format(record)

        # Colour a copy; a file handler may format the same record afterwards
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _console_handler(level: int, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(
        fmt=CONSOLE_FORMAT,
        datefmt=DATE_FORMAT,
        use_color=hasattr(stream, "isatty") and stream.isatty(),
    ))
    return handler


def _file_handler(level: int, log_file: Path) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(settings: Settings) -> None:
    """
    Configure the ``runebook`` logger from settings.

    Replaces any handlers from an earlier call, so it is safe to call
    again after settings change.

    Args:
        settings: Application settings containing log configuration
    """
    level = getattr(logging, settings.log_level)

    app_logger = logging.getLogger(ROOT_LOGGER_NAME)
    app_logger.setLevel(level)
    app_logger.handlers.clear()
    app_logger.addHandler(_console_handler(level, sys.stderr))
    if settings.log_file:
        app_logger.addHandler(_file_handler(level, Path(settings.log_file)))
    app_logger.propagate = False

    third_party_level = logging.DEBUG if level == logging.DEBUG else logging.WARNING
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    app_logger.info(f"Logging initialized - Level: {settings.log_level}")
    if settings.log_file:
        app_logger.info(f"Logging to file: {settings.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__). Names outside the
              ``runebook`` package are nested under it.

    Returns:
        Logger within the ``runebook`` hierarchy
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
