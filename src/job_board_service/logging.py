"""Logging helpers bound to the job board service namespace."""

from __future__ import annotations

import logging

from service_commons.logging import get_named_logger
from service_commons.logging import setup_logging as setup_service_logging

SERVICE_LOGGER_NAME = "job_board_service"


def setup_logging(level: str, directory: str) -> logging.Logger:
    """Configure JSON logging for the service root logger."""
    return setup_service_logging(level, SERVICE_LOGGER_NAME, directory)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the service namespace."""
    return get_named_logger(SERVICE_LOGGER_NAME, name)
