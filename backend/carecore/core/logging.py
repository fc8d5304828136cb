"""Logging configuration for the gateway."""

import logging
import sys


def configure_logging(level: str = "INFO") -> None:
    """
    Configure standard library logging once for the whole process.
    Module loggers pass structured context through ``extra``.
    """
    root = logging.getLogger()
    if getattr(root, "_carecore_configured", False):
        root.setLevel(getattr(logging, level.upper(), logging.INFO))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    root._carecore_configured = True
