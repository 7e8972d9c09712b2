"""
Logging configuration for the Auto-Apply Orchestrator.
Provides structured logging with proper formatting.
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Log directory
LOG_DIR = Path(os.getenv("LOG_DIR", Path(__file__).parent.parent / "logs"))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        # Color a copy so file handlers keep the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(colored.levelname, self.RESET)
        colored.levelname = f"{color}{colored.levelname}{self.RESET}"
        return super().format(colored)


def setup_logging(name: str = "auto_apply") -> logging.Logger:
    """
    Setup and return a configured logger.

    Args:
        name: Logger name (default: auto_apply)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(console_handler)

    file_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = RotatingFileHandler(
        LOG_DIR / f"{name}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        LOG_DIR / f"{name}_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)
    logger.addHandler(error_handler)

    return logger


# Create default logger
logger = setup_logging()


def log_request(method: str, path: str, status_code: int = None, duration_ms: float = None):
    """Log an HTTP request."""
    if duration_ms is not None:
        logger.info(f"HTTP {method} {path} -> {status_code} ({duration_ms:.2f}ms)")
    else:
        logger.info(f"HTTP {method} {path}")


def log_queue_transition(
    queue_id: int,
    user_id: int,
    from_status: str,
    to_status: str,
    message: Optional[str] = None,
):
    """Log a queue entry status change."""
    suffix = f": {message}" if message else ""
    if to_status == "failed":
        logger.warning(f"Queue {queue_id} (user {user_id}) {from_status} -> {to_status}{suffix}")
    else:
        logger.info(f"Queue {queue_id} (user {user_id}) {from_status} -> {to_status}{suffix}")


def log_ai_request(provider: str, operation: str, error: str = None):
    """Log an AI provider stage attempt."""
    if error:
        logger.warning(f"AI {provider}.{operation} failed: {error}")
    else:
        logger.debug(f"AI {provider}.{operation} completed")


def log_executor_call(operation: str, url: str, status: str = None, error: str = None):
    """Log a browser executor call."""
    if error:
        logger.error(f"Executor {operation} {url} failed: {error}")
    else:
        logger.info(f"Executor {operation} {url} -> {status}")
