import asyncio
from typing import Any, Dict

from config.logging_config import get_logger
from services.site_audit import cleanup
from services.site_audit.db.session import dispose_db, get_session

from services.site_audit.tasks.audit_tasks import enqueue_batch
from services.site_audit.tasks.celery_app import celery_app

logger = get_logger(__name__)


async def _recover() -> list[str]:
    try:
        async with get_session() as session:
            return await cleanup.recover_stale_batches(session)
    finally:
        await dispose_db()


async def _cleanup() -> dict:
    try:
        async with get_session() as session:
            return await cleanup.run_periodic_cleanup(session)
    finally:
        await dispose_db()


@celery_app.task(
    name="services.site_audit.tasks.periodic_tasks.recover_stale_batches"
)
def recover_stale_batches() -> Dict[str, Any]:
    audit_ids = asyncio.run(_recover())
    for audit_id in audit_ids:
        enqueue_batch(audit_id)
    if audit_ids:
        logger.warning("Re-enqueued stalled audits", extra={"count": len(audit_ids)})
    return {"status": "completed", "recovered": audit_ids}


@celery_app.task(
    name="services.site_audit.tasks.periodic_tasks.periodic_cleanup"
)
def periodic_cleanup() -> Dict[str, Any]:
    stats = asyncio.run(_cleanup())
    return {"status": "completed", **stats}
