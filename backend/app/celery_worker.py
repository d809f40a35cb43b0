import asyncio
import logging
import sys
import time

from celery.signals import worker_process_init

from app.celery_config import celery_app
from app.core.config import get_settings
from app.db.init import init_db
import app.scheduler  # noqa: F401  registers the beat tick

# Entry point for the Celery worker and beat:
#   celery -A app.celery_worker worker --loglevel=info
#   celery -A app.celery_worker beat --loglevel=info

logging.basicConfig(level=get_settings().LOG_LEVEL)
logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """
    Check the database connection when a Celery worker process starts.
    Tasks initialize Beanie again inside their own event loop.
    """
    logger.info("Celery worker process initializing...")
    try:
        asyncio.run(init_db())
        logger.info("Database connection initialized for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        time.sleep(5)
        try:
            asyncio.run(init_db())
            logger.info("Database connection initialized for Celery worker (retry successful).")
        except Exception as retry_error:
            logger.error(f"Failed to initialize database for Celery worker (retry failed): {retry_error}", exc_info=True)
            sys.exit(1)


celery = celery_app
