"""
Centralized logging configuration for SocketMetrics.

Library modules only call logging.getLogger(__name__); handlers are attached
here, once, by the entry point. Supports:
- Console output with colored levels
- File output with rotation
- JSON line format for log shippers
- Environment-based defaults (LOG_LEVEL, LOG_FILE, LOG_JSON, LOG_CONSOLE)
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"

        result = super().format(record)

        # Other handlers share the record
        record.levelname = levelname

        return result


def setup_logging(
    name: Optional[str] = None,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    rotation: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> logging.Logger:
    """
    Configure logging for the application.

    Args:
        name: Logger name (defaults to root logger)
        level: Log level name; falls back to LOG_LEVEL, then INFO
        log_file: Path to log file; falls back to LOG_FILE, then no file
        console: Log to stdout
        json_format: Emit one JSON object per line
        rotation: Rotate the log file at max_bytes
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logging(level="DEBUG", log_file="logs/socketmetrics.log")
        >>> logger.info("Server started")
    """
    logger = logging.getLogger(name)

    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    level = level.upper()

    if log_file is None:
        log_file = os.getenv("LOG_FILE")

    numeric_level = getattr(logging, level, logging.INFO)
    logger.setLevel(numeric_level)

    # Avoid duplicate handlers on re-configuration
    logger.handlers.clear()

    if json_format:
        log_format = (
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "function": "%(funcName)s", '
            '"line": %(lineno)d, "message": "%(message)s"}'
        )
        date_format = "%Y-%m-%dT%H:%M:%S"
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        date_format = "%Y-%m-%d %H:%M:%S"

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        if json_format or not sys.stdout.isatty():
            console_handler.setFormatter(logging.Formatter(log_format, date_format))
        else:
            console_handler.setFormatter(ColoredFormatter(log_format, date_format))
        logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        if rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        else:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")

        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(log_format, date_format))
        logger.addHandler(file_handler)

    if name is not None:
        logger.propagate = False

    # aiohttp logs every request at INFO
    logging.getLogger("aiohttp.access").setLevel(max(numeric_level, logging.WARNING))

    return logger


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    message: str = "An exception occurred",
    level: int = logging.ERROR,
) -> None:
    """Log an exception with full traceback."""
    logger.log(level, f"{message}: {exc}", exc_info=exc)



def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def configure_default_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    json_format: Optional[bool] = None,
    console: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the root logger for the server process.

    Arguments left as None are read from the environment:
    - LOG_LEVEL: Logging level (default: INFO)
    - LOG_FILE: Log file path (default: no file)
    - LOG_JSON: Use JSON format (default: false)
    - LOG_CONSOLE: Enable console output (default: true)

    Returns:
        The configured root logger
    """
    if json_format is None:
        json_format = _env_flag("LOG_JSON", False)
    if console is None:
        console = _env_flag("LOG_CONSOLE", True)

    root = setup_logging(level=level, log_file=log_file, console=console, json_format=json_format)

    logging.getLogger(__name__).info(
        f"Logging initialized: level={logging.getLevelName(root.level)}, file={log_file or os.getenv('LOG_FILE')}, "
        f"json={json_format}, console={console}"
    )
    return root
