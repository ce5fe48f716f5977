"""
Logging configuration for the Ledger Transfer API.

Attaches a console handler to the root logger and, when LOG_FILE is set,
a rotating file handler. Modules log through logging.getLogger(__name__).
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from ledger_api.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5


def setup_logging() -> None:
    """
    Configure the root logger and the service logger.

    Safe to call more than once: handlers installed by a previous call are
    replaced, not duplicated.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if getattr(handler, "_ledger_api", False):
            root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler._ledger_api = True
    root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler._ledger_api = True
        root_logger.addHandler(file_handler)

    # SQL statements are only interesting in DEBUG mode (engine echo handles that)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
