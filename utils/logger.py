"""
Shared application logger.

All modules log through the same named logger so a host application can
attach its own handlers (crash reporting, device console) in one place.
"""

import logging
import sys

from config import settings

LOGGER_NAME = "polylingo"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d - %(message)s"


def setup_logger(level: str = settings.LOG_LEVEL) -> logging.Logger:
    """Configure and return the application logger"""
    app_logger = logging.getLogger(LOGGER_NAME)

    if not app_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        app_logger.addHandler(handler)

    app_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    app_logger.propagate = True
    return app_logger


logger = setup_logger()
