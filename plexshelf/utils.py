#!/usr/bin/env python3
"""
PlexShelf Utilities Module

This module provides shared utility functions including logging setup and the
small formatting helpers used by the Plex normalizer and the statistics
endpoints. Keeping them here avoids duplicating cross-cutting behavior across
the service components.

Functions:
    setup_logging: Configure logging with rotation and custom formatting
    get_logger: Retrieve existing logger instances by name
    format_bytes: Convert byte counts to human-readable format
    format_duration: Convert a minute count to an "Xh Ym" label

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import colorama
from colorama import Fore, Style


VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


class BracketFormatter(logging.Formatter):
    """
    Log formatter that produces structured, bracketed output.

    Every line looks like ``[2025-01-15 10:30:45 UTC][INFO][plexshelf.sync] message``.
    The bracket format stays easy to grep and parse while remaining readable.
    When color output is requested the level and component brackets are
    colored with colorama escape codes; file handlers always use the plain form.
    """

    LEVEL_COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.RED + Style.BRIGHT,
    }

    def __init__(self, use_color_output: bool = False):
        super().__init__()
        self.use_colors = use_color_output

    def format(self, record: logging.LogRecord) -> str:
        # UTC keeps timestamps comparable across hosts
        timestamp = datetime.fromtimestamp(
            record.created,
            tz=timezone.utc
        ).strftime('%Y-%m-%d %H:%M:%S UTC')
        message_text = record.getMessage()

        if record.exc_info:
            message_text = f"{message_text}\n{self.formatException(record.exc_info)}"

        if not self.use_colors:
            return f"[{timestamp}][{record.levelname}][{record.name}] {message_text}"

        level_color = self.LEVEL_COLORS.get(record.levelname, '')
        return (
            f"{Fore.WHITE}{Style.DIM}[{timestamp}]{Style.RESET_ALL}"
            f"{level_color}[{record.levelname}]{Style.RESET_ALL}"
            f"{Fore.BLUE}[{record.name}]{Style.RESET_ALL} "
            f"{level_color}{message_text}{Style.RESET_ALL}"
        )


def _should_use_colors() -> bool:
    """Decide whether console output gets ANSI colors."""
    if os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes'):
        return False
    if os.environ.get('FORCE_COLOR', '').lower() in ('1', 'true', 'yes'):
        colorama.init(autoreset=True, strip=False, convert=False)
        return True
    if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
        colorama.init(autoreset=True)
        return True
    return False


def setup_logging(log_level: str = "INFO", log_dir: str = "/app/logs") -> logging.Logger:
    """
    Set up logging with rotation and custom formatting.

    Configures the ``plexshelf`` logger hierarchy with a console handler and a
    rotating file handler. Component loggers (``plexshelf.plex``,
    ``plexshelf.database``...) propagate to it, so this is the only place
    handlers are attached.

    **Log Rotation:**
    The file handler rolls over at 10MB and keeps 5 backups, so the log
    directory never holds more than roughly 60MB.

    Args:
        log_level (str): Python logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir (str): Directory where ``plexshelf.log`` is written. Created if missing.

    Returns:
        logging.Logger: The configured ``plexshelf`` root logger

    Raises:
        ValueError: If log_level is not a valid Python logging level
        PermissionError: If the log directory cannot be created

    Example:
        ```python
        logger = setup_logging("DEBUG", "./logs")
        logger.info("Service starting")
        # [2025-01-15 10:30:45 UTC][INFO][plexshelf] Service starting
        ```

    Note:
        Calling this more than once replaces the existing handlers instead of
        stacking duplicates.
    """
    log_level_upper = log_level.upper()
    if log_level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level '{log_level}'. Must be one of: {VALID_LOG_LEVELS}")

    numeric_level = getattr(logging, log_level_upper)

    log_path = Path(log_dir)
    try:
        log_path.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise PermissionError(f"Cannot create log directory '{log_dir}': {e}")

    use_colors = _should_use_colors()

    logger = logging.getLogger("plexshelf")
    logger.setLevel(numeric_level)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(BracketFormatter(use_color_output=use_colors))
    logger.addHandler(console_handler)

    log_file_path = log_path / "plexshelf.log"
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB per file
            backupCount=5,
            encoding='utf-8',
            mode='a'
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(BracketFormatter(use_color_output=False))
        logger.addHandler(file_handler)
    except PermissionError as e:
        logger.error(f"Cannot create log file '{log_file_path}': {e}")
        logger.warning("Continuing with console logging only")

    # Request logging is done by the API layer
    logging.getLogger("uvicorn.access").disabled = True

    logger.info("=" * 60)
    logger.info("PlexShelf Logging Configuration")
    logger.info("=" * 60)
    logger.info(f"Log Level: {log_level_upper}")
    logger.info(f"Log Directory: {log_dir}")
    logger.info(f"Main Log File: {log_file_path}")
    logger.info(f"Color Support: {'Enabled' if use_colors else 'Disabled'}")
    logger.info("=" * 60)

    return logger


def get_logger(name: str = "plexshelf") -> logging.Logger:
    """
    Get a logger instance by name.

    Logger names are hierarchical so every component inherits the handlers
    installed by setup_logging():

    - "plexshelf" - Main application logger
    - "plexshelf.plex" - Plex server requests and normalization
    - "plexshelf.database" - SQLite document store
    - "plexshelf.sync" - Library reconciliation
    - "plexshelf.auth" - Authentication
    - "plexshelf.records" - Diary, therapy notes and transactions
    - "plexshelf.api" - HTTP endpoints

    Args:
        name (str): Logger name to retrieve. Defaults to main application logger.

    Returns:
        logging.Logger: Logger instance
    """
    return logging.getLogger(name)


def format_bytes(bytes_value: int, empty_label: str = "0 B") -> str:
    """
    Format byte count into human-readable string with binary units.

    Uses 1024-based units (B, KB, MB, GB, TB, PB) and two decimal places,
    which is how library sizes are shown on the statistics endpoints.

    Args:
        bytes_value (int): Number of bytes to format. Negative values count as zero.
        empty_label (str): Text returned for zero bytes.

    Returns:
        str: Human-readable string (e.g., "1.50 GB", "512 B")

    Example:
        ```python
        format_bytes(1536)                    # "1.50 KB"
        format_bytes(5 * 1024 ** 4)           # "5 TB"
        format_bytes(0, empty_label="0 GB")   # "0 GB"
        ```
    """
    if bytes_value <= 0:
        return empty_label

    units = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']

    # Each unit is 2^10 larger than the previous one
    unit_index = min((int(bytes_value).bit_length() - 1) // 10, len(units) - 1)
    size = bytes_value / (1 << (unit_index * 10))

    if size == int(size):
        return f"{int(size)} {units[unit_index]}"
    return f"{size:.2f} {units[unit_index]}"


def format_duration(total_minutes: int) -> str:
    """
    Format a minute count as "Xh Ym", "Xh" or "Ym".

    Args:
        total_minutes (int): Duration in whole minutes

    Returns:
        str: Compact duration label; zero minutes gives "0m"
    """
    total_minutes = max(int(total_minutes), 0)
    hours, minutes = divmod(total_minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"
