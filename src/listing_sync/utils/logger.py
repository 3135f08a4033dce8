"""
Logging configuration for the listing sync engine.

Colored console output plus a rotating log file per named logger. Levels and
output directory come from environment variables so workers, the CLI and
tests share one setup.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

import colorlog


class ListingSyncLogger:
    """Centralized logger for the listing sync application."""

    def __init__(self, name: str = "listing_sync"):
        self.name = name
        self.logger = logging.getLogger(name)
        self._setup_logger()

    def _setup_logger(self) -> None:
        """Setup logger with file and console handlers."""
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        log_dir = os.getenv("LOG_DIR", "./logs")
        debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"

        Path(log_dir).mkdir(parents=True, exist_ok=True)

        self.logger.setLevel(getattr(logging, log_level, logging.INFO))

        # get_logger() may be called repeatedly for the same name
        self.logger.handlers.clear()

        self._setup_console_handler(debug_mode)
        self._setup_file_handler(log_dir, debug_mode)

        self.logger.propagate = False

    def _setup_console_handler(self, debug_mode: bool) -> None:
        """Setup colored console logging."""
        console_handler = colorlog.StreamHandler(sys.stdout)

        if debug_mode:
            color_format = (
                "%(log_color)s%(asctime)s [%(levelname)8s] "
                "%(name)s.%(funcName)s:%(lineno)d - %(message)s"
            )
        else:
            color_format = (
                "%(log_color)s%(asctime)s [%(levelname)8s] "
                "%(name)s - %(message)s"
            )

        formatter = colorlog.ColoredFormatter(
            color_format,
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )

        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

    def _setup_file_handler(self, log_dir: str, debug_mode: bool) -> None:
        """Setup file logging with rotation (5MB per file, 5 backups)."""
        # One file per top-level package keeps module loggers together
        file_stem = self.name.split(".")[0]
        log_file = os.path.join(log_dir, f"{file_stem}.log")

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )

        if debug_mode:
            file_format = (
                "%(asctime)s [%(levelname)8s] %(name)s.%(funcName)s:%(lineno)d - "
                "%(message)s"
            )
        else:
            file_format = "%(asctime)s [%(levelname)8s] %(name)s - %(message)s"

        file_handler.setFormatter(logging.Formatter(file_format, datefmt="%Y-%m-%d %H:%M:%S"))
        self.logger.addHandler(file_handler)

    def get_logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self.logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name. If None, uses the caller's module name.

    Returns:
        Configured logger instance.
    """
    if name is None:
        frame = sys._getframe(1)
        name = frame.f_globals.get('__name__', 'listing_sync')

    return ListingSyncLogger(name).get_logger()


def setup_logging() -> None:
    """
    Setup application-wide logging configuration.

    Called once at process startup by the CLI and the Celery worker.
    """
    root_logger = ListingSyncLogger("listing_sync").get_logger()
    root_logger.info("Logging system initialized")
    root_logger.debug(f"Log level: {root_logger.level}")
    root_logger.debug(f"Handlers: {[h.__class__.__name__ for h in root_logger.handlers]}")
