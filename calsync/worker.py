"""
Celery worker entry point
Runs calendar sync jobs from every lane queue
"""
import logging
from celery.signals import setup_logging as celery_setup_logging, worker_ready, worker_shutdown

from calsync.config.settings import get_settings
from calsync.utils.my_logging import setup_logging

# Setup logging first
settings = get_settings()
setup_logging(worker=True)
logger = logging.getLogger(__name__)

from calsync.config.celery_config import ALL_QUEUES, celery_app  # noqa: E402


@celery_setup_logging.connect
def configure_worker_logging(**kwargs):
    """Keep Celery from replacing our handlers in worker processes"""
    setup_logging(worker=True)


@worker_ready.connect
def worker_ready_handler(sender=None, **kwargs):
    """Handle worker startup"""
    logger.info("🚀 Calendar sync worker ready!")
    logger.info(f"📋 Registered tasks: {list(celery_app.tasks.keys())}")
    logger.info(f"📅 Consuming queues: {', '.join(ALL_QUEUES)}")


@worker_shutdown.connect
def worker_shutdown_handler(sender=None, **kwargs):
    """Handle worker shutdown"""
    logger.info("🛑 Calendar sync worker shutting down...")


if __name__ == "__main__":
    # Run worker directly
    celery_app.start([
        'worker',
        '--loglevel=info',
        '--concurrency=4',
        '--max-tasks-per-child=1000',
        f"--queues={','.join(ALL_QUEUES)}",
    ])
