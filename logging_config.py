"""Logging configuration for the application."""

import logging
import os
import sys

HANDLER_NAME = "campus-console"


def setup_logging(level=None):
    """Configure the root logger for the process."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Reloads and repeated app startups must not stack handlers
    if not any(h.get_name() == HANDLER_NAME for h in root_logger.handlers):
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.set_name(HANDLER_NAME)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # Set higher log levels for noisy components
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)
