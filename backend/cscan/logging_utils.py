"""Logging utilities for the C-scan inspection engine."""

import logging
import sys
from typing import Optional


def setup_logger(name: str, level: str = "INFO",
                 format_string: Optional[str] = None) -> logging.Logger:
    """
    Setup logger with inspector-friendly output.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Clear existing handlers to avoid duplicates
    logger.handlers.clear()

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if format_string is None:
        if level.upper() == "DEBUG":
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            format_string = "%(levelname)s: %(message)s"

    console_handler.setFormatter(logging.Formatter(format_string))
    logger.addHandler(console_handler)
    logger.propagate = False

    return logger


def log_step(logger: logging.Logger, percent: int, message: str) -> None:
    """Log a coarse pipeline progress step."""
    logger.info(f"PIPELINE {percent:3d}% - {message}")


def log_failure(logger: logging.Logger, error_message: str) -> None:
    """Log a terminal pipeline failure."""
    logger.error(f"PIPELINE FAILED - {error_message}")
