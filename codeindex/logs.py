"""
Logging setup for the indexing engine.

Library modules only ever call ``logging.getLogger(__name__)``; a host
process that wants a persistent log calls :func:`setup_logger` once.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime

LOGGER_NAME = "codeindex"


def setup_logger(log_dir: str = ".codeindex/logs", level: int = logging.DEBUG) -> logging.Logger:
    """Attach a timestamped file handler to the ``codeindex`` logger.

    Calling it twice for the same directory does not add a second handler.
    """
    os.makedirs(log_dir, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    abs_dir = os.path.abspath(log_dir)
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and os.path.dirname(
            handler.baseFilename
        ) == abs_dir:
            return logger

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"codeindex_{timestamp}.log")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%H:%M:%S"
    ))
    logger.addHandler(fh)
    return logger
