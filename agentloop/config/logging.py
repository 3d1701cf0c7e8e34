"""
Logging configuration and setup.

Everything the engine logs lives under the ``agentloop`` logger. The
console handler colours level names when stderr is a terminal; a file
handler with source locations is added when a log file is configured.
Chatty third-party loggers (LiteLLM, httpx, the MCP client) are held at
WARNING unless the engine itself runs at DEBUG.
"""

import logging
import sys
from pathlib import Path

from agentloop.config.settings import Settings

PACKAGE_LOGGER = "agentloop"

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "mcp")


class LevelColorFormatter(logging.Formatter):
    """Colours the level name with ANSI escapes."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        # Restore afterwards: other handlers format the same record
        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    formatter_cls = LevelColorFormatter if sys.stderr.isatty() else logging.Formatter
    handler.setFormatter(formatter_cls(fmt=CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _file_handler(log_file: str | Path, level: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=FILE_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(settings: Settings) -> None:
    """
    Configure the ``agentloop`` logger tree from settings.

    Safe to call more than once; handlers from a previous call are
    replaced.

    Args:
        settings: Application settings containing log configuration
    """
    level = logging.getLevelName(settings.log_level)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    package_logger.handlers.clear()
    package_logger.addHandler(_console_handler(level))
    if settings.log_file:
        package_logger.addHandler(_file_handler(settings.log_file, level))
    package_logger.propagate = False

    third_party_level = logging.DEBUG if level == logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    package_logger.debug(
        f"Logging configured: level={settings.log_level}, file={settings.log_file or '-'}"
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the ``agentloop`` tree.

    ``get_logger(__name__)`` from a package module returns that module's
    logger unchanged; any other name is nested under ``agentloop.``.
    """
    if name == PACKAGE_LOGGER or name.startswith(f"{PACKAGE_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
