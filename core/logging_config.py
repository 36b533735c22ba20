"""
Logging configuration for batch registration runs.
Console output with colors plus rotating run and error log files.
"""

import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Work on a copy so file handlers don't receive escape codes
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    name: str = "batch_register",
    level: str = "INFO",
    log_dir: Optional[str] = "./logs",
    root: bool = True,
) -> logging.Logger:
    """
    Setup and return a configured logger.

    Args:
        name: Logger name, also used for the log file names
        level: Log level name
        log_dir: Directory for rotating log files (None disables file logging)
        root: Attach handlers to the root logger so every module logger is captured

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger() if root else logging.getLogger(name)

    # Avoid duplicate handlers
    if getattr(logger, "_batch_register_configured", False):
        return logging.getLogger(name)

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(console_handler)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        file_format = logging.Formatter(
            '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # File handler with rotation
        file_handler = RotatingFileHandler(
            path / f"{name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

        # Error file handler (errors and above)
        error_handler = RotatingFileHandler(
            path / f"{name}_errors.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_format)
        logger.addHandler(error_handler)

    logger._batch_register_configured = True
    return logging.getLogger(name)


def log_attempt(identifier: str, attempt: int, max_attempts: int, outcome: str, detail: str = ""):
    """Log one finished attempt."""
    logger = logging.getLogger("batch_register.attempts")
    message = f"[{identifier}] attempt {attempt}/{max_attempts} -> {outcome}"
    if detail:
        message += f": {detail}"
    if outcome == "success":
        logger.info(message)
    else:
        logger.warning(message)
