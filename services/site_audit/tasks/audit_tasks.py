import asyncio
import time
from typing import Any, Dict, Optional

from config.logging_config import get_logger, log_task_execution
from services.site_audit.config import settings
from services.site_audit.db.session import dispose_db
from services.site_audit.runner import run_audit_batch

from services.site_audit.tasks.celery_app import celery_app

logger = get_logger(__name__)


async def _run_batch(audit_id: str):
    try:
        return await run_audit_batch(audit_id)
    finally:
        await dispose_db()


def enqueue_batch(audit_id: str, root_url: Optional[str] = None, countdown: Optional[int] = None):
    return run_audit_batch_task.apply_async(args=[audit_id, root_url], countdown=countdown)


@celery_app.task(
    bind=True,
    name="services.site_audit.tasks.audit_tasks.run_audit_batch_task",
)
def run_audit_batch_task(self, audit_id: str, root_url: Optional[str] = None) -> Dict[str, Any]:
    """Run one audit batch and schedule the next one while the audit has work left."""
    task_id = self.request.id
    started = time.monotonic()
    logger.info(
        "Starting audit batch task",
        extra={"audit_id": audit_id, "url": root_url, "task_id": task_id},
    )

    try:
        result = asyncio.run(_run_batch(audit_id))
    except Exception as exc:
        log_task_execution(logger, "run_audit_batch_task", task_id, time.monotonic() - started, "failed", error=exc)
        raise

    if result.needs_continuation:
        enqueue_batch(audit_id, root_url, countdown=settings.continue_countdown_s)

    log_task_execution(logger, "run_audit_batch_task", task_id, time.monotonic() - started, result.status.value)
    return {
        "status": result.status.value,
        "audit_id": audit_id,
        "batch": result.batch,
        "pages_processed": result.pages_processed,
        "budget_exhausted": result.budget_exhausted,
        "continued": result.needs_continuation,
    }
