"""Pricing, stock and document-lifecycle core for the back-office ERP.

Importing the package configures the shared ``backoffice_erp`` logger used by
every layer. Two environment variables tune it without touching code:

``BACKOFFICE_LOG_LEVEL``
    Name of the threshold applied to both handlers (default ``INFO``).
``BACKOFFICE_LOG_DIR``
    Directory receiving the rotating log file (default ``<project>/.logs``).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.3.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("BACKOFFICE_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "backoffice_erp.log"


def _resolve_level(raw: str | None) -> int:
    """Translate a level name into a ``logging`` constant, falling back to INFO."""

    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach the file and console handlers to the package logger once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level(os.environ.get("BACKOFFICE_LOG_LEVEL"))
    logger.setLevel(level)
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
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: back-office log file unavailable at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'backoffice_erp' package (level=%s).", logging.getLevelName(log.level))
