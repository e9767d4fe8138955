"""
Default logging interface for the indexer
"""

import logging
import os


_LOG_FORMATTER = logging.Formatter(
    "[%(asctime)s][%(threadName)s][%(levelname)s]:%(message)s"
)

# Overrides the default INFO level for every indexer logger.
LOG_LEVEL_ENV_VAR = "REGISTRY_INDEXER_LOG_LEVEL"


def _get_default_level() -> int:
    level_name = os.getenv(LOG_LEVEL_ENV_VAR, "INFO").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO


def get_default_logger(name: str) -> logging.Logger:
    """
    Get default logger for a given name.

    :param name: The logger name, typically the module __name__.
    :return: The logger object.
    """

    # Library code may log before the host application configures logging.
    if len(logging.getLogger().handlers) == 0:
        logging.getLogger().addHandler(logging.NullHandler())

    log = logging.getLogger(name)
    log.setLevel(_get_default_level())

    if len(log.handlers) == 0:
        handler = logging.StreamHandler()
        handler.setFormatter(_LOG_FORMATTER)
        log.addHandler(handler)
        log.propagate = False

    return log
