"""
Logging Configuration for CoffeeLeaf
====================================
Centralized logging setup for the API and the prediction worker.

Features:
- Colored console output when attached to a terminal
- Optional rotating log files
- Quieter third-party client loggers
"""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Client libraries that log every connection attempt at INFO
NOISY_LOGGERS = ('kafka', 'urllib3', 'werkzeug')


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, use_color=None):
        super().__init__(fmt, datefmt)
        if use_color is None:
            use_color = hasattr(sys.stdout, 'isatty') and sys.stdout.isatty()
        self.use_color = use_color

    def format(self, record):
        if not self.use_color or record.levelname not in self.COLORS:
            return super().format(record)
        # Color a copy so other handlers still see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(colored)


def setup_logger(
    name='coffeeleaf',
    level=logging.INFO,
    log_dir=None,
    log_file=None,
    file_level=logging.DEBUG,
    max_bytes=10*1024*1024,  # 10MB
    backup_count=5
):
    """
    Setup logger with console and optional file handlers.

    Args:
        name: Logger name (the package logger by default)
        level: Logging level for console
        log_dir: Directory for log files; no file handler when empty
        log_file: Log filename (``<name>.log`` if None)
        file_level: Logging level for file
        max_bytes: Max size per log file
        backup_count: Number of backup files to keep

    Returns:
        logger: Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(min(level, file_level) if log_dir else level)
    logger.handlers.clear()  # Remove any existing handlers

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_filepath = log_path / (log_file or f'{name}.log')

        file_handler = RotatingFileHandler(
            log_filepath,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)
        logger.info(f"Log file: {log_filepath}")

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return logger
