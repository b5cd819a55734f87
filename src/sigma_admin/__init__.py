"""Sigma Vie admin data layer.

Importing the package configures the shared ``log`` object: a rotating file
under ``.logs/`` (or ``$SIGMA_ADMIN_LOG_DIR``) receives everything from INFO
up, while stderr only shows warnings unless :func:`set_console_level` is
called, e.g. by ``sigma-admin --verbose``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("SIGMA_ADMIN_LOG_DIR") or PROJECT_ROOT / ".logs")
LOG_FILE = LOG_DIR / "sigma_admin.log"

_CONSOLE_HANDLER_NAME = "sigma_admin.console"


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to write sigma_admin logs to '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # Warnings only by default so CLI output stays readable.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(_CONSOLE_HANDLER_NAME)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: Union[int, str]) -> None:
    """Change how much of the package log reaches stderr."""

    for handler in log.handlers:
        if handler.get_name() == _CONSOLE_HANDLER_NAME:
            handler.setLevel(level)


log = _configure_logging()
log.debug("Logger ready for the sigma_admin package (file: %s)", LOG_FILE)
