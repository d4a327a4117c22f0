"""
=============================================
Logging configuration for embedded databases.
=============================================

Provides consistent logging across the package with:
- A single package logger namespace ('embedded_db')
- Optional colored console output with emojis
- Optional file output
- Teardown failure reporting that never escalates

Library code only ever calls get_logger(); handlers are installed by the
embedding test suite through setup_logging() when it wants console or file
output.

Example:
    >>> from embedded_db.core.logger import get_logger, setup_logging
    >>>
    >>> # Optional, once per test session
    >>> setup_logging(log_level='DEBUG', log_file='embedded_db.log')
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info("Cluster started on port 54321")
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

from embedded_db.core.exceptions import TeardownWarning

PACKAGE_LOGGER = 'embedded_db'
LOG_LEVEL_ENV = 'EMBEDDED_DATABASE_LOG_LEVEL'


class ColoredFormatter(logging.Formatter):
    """Formatter with ANSI colors and emoji indicators for console output.

    Attributes:
        COLORS: Dict mapping log levels to ANSI color codes
        EMOJI: Dict mapping log levels to emoji indicators
    """

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m'
    }

    EMOJI = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️ ',
        'WARNING': '⚠️ ',
        'ERROR': '❌',
        'CRITICAL': '🔥'
    }

    def format(self, record):
        """Format a record without mutating it for other handlers."""
        levelname = record.levelname
        colored = logging.makeLogRecord(record.__dict__)
        colored.emoji = self.EMOJI.get(levelname, '')
        if levelname in self.COLORS:
            colored.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
        return super().format(colored)


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get a logger instance for the specified module.

    Args:
        name: Logger name (typically __name__ of calling module)
        level: Optional logging level override (DEBUG/INFO/WARNING/ERROR/CRITICAL)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)

    if level:
        logger.setLevel(getattr(logging, level.upper()))

    return logger


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    log_dir: Optional[str] = None,
    console_output: bool = True,
    use_colors: bool = True
) -> logging.Logger:
    """Configure the package logger.

    Replaces any handlers previously installed by this function on the
    'embedded_db' logger. The root logger is left untouched.

    Args:
        log_level: Logging level; defaults to $EMBEDDED_DATABASE_LOG_LEVEL or INFO
        log_file: Optional log file name (e.g., 'embedded_db.log')
        log_dir: Optional log directory path (defaults to 'logs/')
        console_output: If True, output to console (stderr)
        use_colors: If True, use colored output for console

    Returns:
        The configured package logger
    """
    level_name = (log_level or os.getenv(LOG_LEVEL_ENV, 'INFO')).upper()
    level = getattr(logging, level_name)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)

        if use_colors:
            console_formatter = ColoredFormatter(
                '%(emoji)s %(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
        else:
            console_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )

        console_handler.setFormatter(console_formatter)
        package_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_dir) if log_dir else Path('logs')
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path / log_file, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        package_logger.addHandler(file_handler)

    return package_logger


def log_teardown_failure(logger: logging.Logger, action: str, error: BaseException) -> TeardownWarning:
    """Log a failed cleanup step once and swallow it.

    Args:
        logger: Logger of the module performing the teardown
        action: Short description of what was being cleaned up
        error: The exception raised by the cleanup step

    Returns:
        The TeardownWarning that was logged
    """
    warning = TeardownWarning(f"Failed to {action}: {error}")
    logger.warning(str(warning), exc_info=(type(error), error, error.__traceback__))
    return warning
