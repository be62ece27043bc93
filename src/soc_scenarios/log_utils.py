"""Logger setup shared by the simulation modules."""

import logging
import os
from typing import Optional, Union
from pathlib import Path

PACKAGE_LOGGER = "soc_scenarios"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """
    Attach console (and optionally file) handlers to the package logger.

    Each handler is only added once, so repeated calls (e.g. one per pipeline
    run) do not duplicate output, while a later run can still add its own log
    file. The file handler records everything at DEBUG while the console only
    shows ``level`` and above.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler) for h in logger.handlers
    )
    if not has_console:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    if log_file is not None:
        path = os.path.abspath(str(log_file))
        has_file = any(isinstance(h, logging.FileHandler) and h.baseFilename == path for h in logger.handlers)
        if not has_file:
            fh = logging.FileHandler(path)
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(formatter)
            logger.addHandler(fh)

    return logger
