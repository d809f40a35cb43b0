import logging

from app.celery_config import celery_app
from app.core.config import get_settings
from app.tasks import tick_task

logger = logging.getLogger(__name__)


# Configure periodic tasks
@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    settings = get_settings()
    if settings.SCHEDULER_MODE != "celery":
        logger.info(f"Scheduler mode is {settings.SCHEDULER_MODE}, Celery beat tick not registered")
        return

    sender.add_periodic_task(
        settings.TICK_INTERVAL_SECONDS,
        tick_task.s(),
        name="campaign-engine-tick",
    )
    logger.info(f"Periodic tick configured every {settings.TICK_INTERVAL_SECONDS}s")
