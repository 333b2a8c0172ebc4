import logging
import os
import sys
from logging.handlers import RotatingFileHandler

from potmarket.config import settings

ROOT_LOGGER_NAME = "potmarket"


def setup_logger(name=ROOT_LOGGER_NAME, log_level=None, log_dir=None):
    """
    Set up and configure logger with both file and console handlers

    Args:
        name: Logger name
        log_level: Logging level (default: ``settings.log_level``)
        log_dir: Directory for the rotating log file (default: ``settings.log_dir``)

    Returns:
        Configured logger instance
    """
    log_level = log_level or settings.log_level
    log_dir = log_dir or settings.log_dir
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Clear existing handlers if any
    if logger.handlers:
        logger.handlers.clear()

    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # Rotating log files, max 5MB per file, keep 5 backup files
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, f'{name}.log'),
        maxBytes=5*1024*1024,
        backupCount=5
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(file_formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger


def get_logger(module_name: str) -> logging.Logger:
    """Return a child of the application logger for ``module_name``."""
    short = module_name.rsplit(".", 1)[-1]
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{short}")
