"""
Celery application.

Four queues so a burst of alerts never delays conversation turns:
conversations (handed-off webhook turns), outbound (outbox sends),
fish-alerts (matching, digests, sold-out batches) and maintenance.
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import settings
from app.core.logging import setup_logging

celery_app = Celery(
    "nearbuy_bot",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.ALERT_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="conversations",
    task_routes={
        "app.workers.tasks.process_incoming_message": {"queue": "conversations"},
        "app.workers.tasks.send_outbox_message": {"queue": "outbound"},
        "app.workers.tasks.process_outbox_messages": {"queue": "outbound"},
        "app.workers.tasks.process_new_catch": {"queue": "fish-alerts"},
        "app.workers.tasks.notify_catch_sold_out": {"queue": "fish-alerts"},
        "app.workers.tasks.send_fish_digests": {"queue": "fish-alerts"},
        "app.workers.tasks.expire_stale_catches": {"queue": "maintenance"},
        "app.workers.tasks.cleanup_processed_webhooks": {"queue": "maintenance"},
        "app.workers.tasks.cleanup_old_outbox_messages": {"queue": "maintenance"},
    },
)

celery_app.conf.beat_schedule = {
    "process-outbox-every-10-seconds": {
        "task": "app.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    # התראות מתוזמנות (בוקר / פעמיים ביום / שבועי)
    "send-fish-digests-every-15-minutes": {
        "task": "app.workers.tasks.send_fish_digests",
        "schedule": 900.0,
    },
    "expire-stale-catches-every-15-minutes": {
        "task": "app.workers.tasks.expire_stale_catches",
        "schedule": 900.0,
    },
    "cleanup-processed-webhooks-daily": {
        "task": "app.workers.tasks.cleanup_processed_webhooks",
        "schedule": crontab(hour="3", minute="0"),
    },
    "cleanup-old-outbox-messages-daily": {
        "task": "app.workers.tasks.cleanup_old_outbox_messages",
        "schedule": crontab(hour="3", minute="30"),
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    # worker ו-beat כותבים באותו פורמט JSON כמו ה-API
    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
