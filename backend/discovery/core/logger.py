# discovery/core/logger.py
"""
Application logger
"""
import logging
import sys

from discovery.core.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(name: str = "discovery", level: str = settings.LOG_LEVEL) -> logging.Logger:
    """
    Configure and return the application logger.

    Handlers are attached once; repeated calls only adjust the level.
    """
    log = logging.getLogger(name)
    log.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    if not log.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log.addHandler(handler)
        log.propagate = False

    return log


logger = setup_logger()
