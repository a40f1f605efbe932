from services.site_audit.tasks.celery_app import celery_app
from services.site_audit.tasks.audit_tasks import enqueue_batch, run_audit_batch_task
from services.site_audit.tasks.periodic_tasks import periodic_cleanup, recover_stale_batches

__all__ = [
    "celery_app",
    "enqueue_batch",
    "run_audit_batch_task",
    "periodic_cleanup",
    "recover_stale_batches",
]
