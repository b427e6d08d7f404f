# calsync/utils/my_logging.py
"""Logging configuration for the API process and the Celery sync workers"""
import logging
import sys
from logging.handlers import RotatingFileHandler

from celery.app.log import TaskFormatter

from calsync.config.settings import get_settings

# task_name/task_id render as ??? outside a running Celery task
LOG_FORMAT = "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s"
WORKER_LOG_FORMAT = (
    "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - "
    "[%(task_name)s(%(task_id)s)] %(message)s"
)

NOISY_LOGGERS = [
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "alembic",
    "httpx",
    "urllib3",
    "msal",
    "googleapiclient.discovery",
    "celery",
    "kombu",
]


def setup_logging(verbose=True, worker=False, log_file=None):
    """Configure application logging.

    Workers get Celery's task formatter so every line from a sync job carries
    the task name and id. ``log_file`` (or LOG_FILE) adds a rotating file.
    """
    settings = get_settings()

    if verbose:
        level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    else:
        level = logging.WARNING

    if worker:
        formatter = TaskFormatter(WORKER_LOG_FORMAT, use_color=False)
    else:
        formatter = logging.Formatter(LOG_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    log_file = log_file or settings.LOG_FILE
    if log_file:
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=settings.LOG_MAX_BYTES,
            backupCount=settings.LOG_BACKUP_COUNT,
            encoding="utf-8",
        ))

    root = logging.getLogger()
    # Celery and re-imports may have configured the root logger already
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    if not verbose:
        for name in NOISY_LOGGERS:
            logger = logging.getLogger(name)
            logger.setLevel(logging.ERROR)
            logger.propagate = False

    return root
