from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "campaign_engine_tasks",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # ETAs from CeleryTimer are timezone-aware UTC datetimes
    timezone="UTC",
    enable_utc=True,
    # Worker settings
    worker_max_tasks_per_child=1000,
    # Tick reports are only kept for inspection
    result_expires=3600,  # 1 hour
    broker_connection_retry_on_startup=True,
)
