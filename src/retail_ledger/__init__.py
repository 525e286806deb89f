"""Retail ledger engine.

Importing the package configures the ``retail_ledger`` logger. The log file
lives in ``.logs/`` at the project root unless ``RETAIL_LEDGER_LOG_DIR``
points elsewhere, and ``RETAIL_LEDGER_LOG_LEVEL`` sets its level.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union


LOG_DIR_ENV = "RETAIL_LEDGER_LOG_DIR"
LOG_LEVEL_ENV = "RETAIL_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "retail_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 5


def default_log_dir() -> Path:
    override = os.environ.get(LOG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(__file__).resolve().parents[2] / ".logs"


def _open_log_file(log_dir: Path) -> Optional[logging.Handler]:
    log_file = log_dir / LOG_FILE_NAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
            delay=True,
        )
    except OSError as exc:
        print(f"Warning: ledger log file '{log_file}' is unavailable ({exc}); logging to stderr only", file=sys.stderr)
        return None


def configure_logging(
    name: str = __name__,
    *,
    log_dir: Optional[Union[str, Path]] = None,
    level: Optional[Union[int, str]] = None,
) -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to ``name``.

    ``level`` (default: ``RETAIL_LEDGER_LOG_LEVEL`` or ``INFO``) applies to
    the logger and its file; stderr only shows warnings and above. A logger
    that already has handlers is returned untouched, so repeated calls never
    duplicate output.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _open_log_file(Path(log_dir) if log_dir is not None else default_log_dir())
    if file_handler is not None:
        file_handler.setLevel(logger.level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


log = configure_logging()
