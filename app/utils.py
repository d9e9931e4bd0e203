"""
Shared helpers.
"""
import logging
import os

_configured = False


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger.

    The root handler is installed once, on first use; the level comes from
    the LOG_LEVEL environment variable (default INFO).

    Usage:
        log = get_logger(__name__)
        log.info("Something happened")
    """
    global _configured
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
        _configured = True
    return logging.getLogger(name)
