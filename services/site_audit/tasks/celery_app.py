from celery import Celery

from config import celery_config
from config.logging_config import setup_celery_logging
from services.site_audit.config import settings

celery_app = Celery(
    "site_audit",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer=celery_config.CELERY_TASK_SERIALIZER,
    accept_content=celery_config.CELERY_ACCEPT_CONTENT,
    result_serializer=celery_config.CELERY_RESULT_SERIALIZER,
    timezone=celery_config.CELERY_TIMEZONE,
    enable_utc=celery_config.CELERY_ENABLE_UTC,
    result_expires=celery_config.CELERY_RESULT_EXPIRES,
    task_queues=celery_config.CELERY_QUEUES,
    task_routes=celery_config.CELERY_ROUTES,
    task_annotations=celery_config.task_annotations(settings.batch_time_limit_s),
    task_acks_late=celery_config.CELERY_TASK_ACKS_LATE,
    worker_prefetch_multiplier=celery_config.CELERY_WORKER_PREFETCH_MULTIPLIER,
    worker_max_tasks_per_child=celery_config.CELERY_WORKER_MAX_TASKS_PER_CHILD,
    task_track_started=True,
    task_always_eager=settings.celery_task_always_eager,
    broker_connection_retry_on_startup=True,
)

celery_app.conf.beat_schedule = celery_config.CELERY_BEAT_SCHEDULE

setup_celery_logging()

celery_app.autodiscover_tasks(["services.site_audit.tasks"])
