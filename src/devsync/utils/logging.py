"""Logging configuration for DEVSYNC."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from devsync.config import DEFAULT_CONFIG_DIR


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    console: bool = True,
) -> logging.Logger:
    """Set up logging for DEVSYNC.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files (defaults to ~/.devsync/logs)
        console: Whether to log to console

    Returns:
        Configured logger
    """
    if log_dir is None:
        log_dir = DEFAULT_CONFIG_DIR / "logs"

    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("devsync")
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers
    logger.handlers.clear()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setLevel(logging.DEBUG)
        logger.addHandler(console_handler)

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Main log file
    main_handler = RotatingFileHandler(
        log_dir / "devsyncd.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    main_handler.setLevel(logging.INFO)
    main_handler.setFormatter(formatter)
    logger.addHandler(main_handler)

    # Error log file
    error_handler = RotatingFileHandler(
        log_dir / "error.log", maxBytes=10 * 1024 * 1024, backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    logger.addHandler(error_handler)

    return logger


def get_logger(name: str = "devsync") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
