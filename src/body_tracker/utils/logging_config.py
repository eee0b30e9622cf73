"""
Logging configuration and utilities.

Provides centralized logging setup for the library and its host application.
"""

import logging
import sys
from pathlib import Path

from body_tracker.utils.parameters import LoggingConfig


def setup_logging(config: LoggingConfig, logger_name: str | None = "body_tracker") -> logging.Logger:
    """
    Set up logging for the body tracker.

    Args:
        config: Logging configuration.
        logger_name: Logger name. If None, configures the root logger.

    Returns:
        Configured logger instance.
    """
    level = getattr(logging, config.level.upper())
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    logger.handlers.clear()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if config.file:
        log_file = Path(config.file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
