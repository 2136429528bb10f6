"""Per-seller sales performance and bonus reports.

Importing the package configures the shared ``sales_bonus`` logger: a rotating
file under ``.logs/`` records everything from INFO upward while the console
only shows warnings and errors, so report output on stdout stays clean.
``SALES_BONUS_LOG_DIR`` and ``SALES_BONUS_LOG_LEVEL`` override the file
location and level.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("SALES_BONUS_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "sales_bonus.log"
LOG_LEVEL = os.environ.get("SALES_BONUS_LOG_LEVEL", "INFO").upper()


def _configure_logging() -> logging.Logger:
    """Attach the report file handler and the stderr warning handler once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        report_log = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        report_log.setLevel(level)
        report_log.setFormatter(formatter)
        logger.addHandler(report_log)
    except OSError as exc:
        print(
            f"Warning: sales report log file unavailable at '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # stdout carries the report itself
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)

    return logger


log = _configure_logging()
log.debug("Sales report logging ready (level %s)", LOG_LEVEL)

__all__ = ["__version__", "log"]
