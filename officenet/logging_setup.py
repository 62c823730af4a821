import logging
import os
import time

LOGGER_NAME = "officenet"
LOG_FORMAT = "%(asctime)sZ %(levelname)-8s [%(threadName)s] %(name)s: %(message)s"


def _resolve_level(level):
    name = (os.environ.get("OFFICENET_LOG_LEVEL") or level or "INFO").strip().upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level=None):
    """
    Attach one stderr handler to the officenet logger tree.

    Timestamps are UTC, and every line carries the thread name so trigger
    firings can be told apart. Calling it again only updates the level.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_resolve_level(level))
    for handler in logger.handlers:
        if getattr(handler, "officenet_handler", False):
            return logger

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S")
    formatter.converter = time.gmtime
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.officenet_handler = True
    logger.addHandler(handler)
    return logger
