"""
Logging configuration for dereport.

Every module obtains its logger through get_logger(__name__). Two modes are
supported:
1. CLI usage: configure_cli_logging() installs a RichHandler on the root
   logger and module loggers propagate to it (single output).
2. Library usage (tests, notebooks, scripts): each module logger gets its own
   StreamHandler and propagation is disabled to avoid duplicate lines.
"""

import logging
import os
import sys
from typing import Optional

from rich.logging import RichHandler

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"

# Third-party loggers that are too chatty at INFO during a report run
NOISY_LOGGERS = ("urllib3", "requests", "biothings.client", "gseapy", "numba", "matplotlib")


def _default_level() -> int:
    level = logging.getLevelName(os.environ.get("DEREPORT_LOG_LEVEL", "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Args:
        name: Name of the logger
        level: Logging level (default: DEREPORT_LOG_LEVEL or INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        logger.setLevel(level if level is not None else _default_level())

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def configure_cli_logging(level: str = "INFO", console=None) -> None:
    """
    Route all dereport logging through a RichHandler on the root logger.

    Loggers created before this call had their own StreamHandler attached;
    those handlers are removed so every record is printed exactly once.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ...)
        console: Optional rich Console to log to
    """
    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
    )
    rich_handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    logging.basicConfig(
        level=numeric_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[rich_handler],
        force=True,
    )

    for logger_name in list(logging.root.manager.loggerDict):
        if not logger_name.startswith("dereport"):
            continue
        existing = logging.getLogger(logger_name)
        for handler in list(existing.handlers):
            existing.removeHandler(handler)
        existing.propagate = True
        existing.setLevel(numeric_level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
