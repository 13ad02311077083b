"""
Celery Application Configuration
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import settings
from app.core.logging import setup_logging

celery_app = Celery(
    "order_assistant",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sync-active-sessions": {
        "task": "app.workers.tasks.sync_active_sessions",
        "schedule": float(settings.SESSION_SYNC_INTERVAL_SECONDS),
    },
    "cleanup-expired-sessions": {
        "task": "app.workers.tasks.cleanup_expired_sessions",
        "schedule": float(settings.SESSION_CLEANUP_INTERVAL_SECONDS),
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    """Structured JSON logs for workers, same format as the API"""
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
