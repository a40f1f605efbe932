# celery_config.py

from kombu import Queue, Exchange
from celery.schedules import crontab

BATCH_TASK = 'services.site_audit.tasks.audit_tasks.run_audit_batch_task'
RECOVER_TASK = 'services.site_audit.tasks.periodic_tasks.recover_stale_batches'
CLEANUP_TASK = 'services.site_audit.tasks.periodic_tasks.periodic_cleanup'

default_exchange = Exchange('default', type='direct')

CELERY_QUEUES = (
    Queue(
        'audit_crawl',
        exchange=default_exchange,
        routing_key='audit.crawl',
        queue_arguments={'x-max-priority': 5}
    ),

    Queue(
        'maintenance',
        exchange=default_exchange,
        routing_key='maintenance',
        queue_arguments={'x-max-priority': 1}
    ),
)

CELERY_ROUTES = {
    BATCH_TASK: {
        'queue': 'audit_crawl',
        'routing_key': 'audit.crawl'
    },
    RECOVER_TASK: {
        'queue': 'maintenance',
        'routing_key': 'maintenance'
    },
    CLEANUP_TASK: {
        'queue': 'maintenance',
        'routing_key': 'maintenance'
    },
}


def task_annotations(batch_time_limit_s):
    # a batch must be able to finish its in-flight page after the crawl budget runs out
    return {
        BATCH_TASK: {
            'time_limit': batch_time_limit_s,
            'soft_time_limit': max(batch_time_limit_s - 10, 1),
            'acks_late': True,
        },
        CLEANUP_TASK: {
            'time_limit': 1800,
            'soft_time_limit': 1700,
        },
    }


CELERY_WORKER_PREFETCH_MULTIPLIER = 1

CELERY_TASK_ACKS_LATE = True

CELERY_WORKER_MAX_TASKS_PER_CHILD = 1000

CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = 'UTC'
CELERY_ENABLE_UTC = True

CELERY_RESULT_EXPIRES = 86400

CELERY_BEAT_SCHEDULE = {
    'recover-stale-audit-batches': {
        'task': RECOVER_TASK,
        'schedule': crontab(minute='*/5'),
        'options': {'queue': 'maintenance'}
    },

    'cleanup-audit-data': {
        'task': CLEANUP_TASK,
        'schedule': crontab(hour=3, minute=0),
        'options': {'queue': 'maintenance'}
    },
}
