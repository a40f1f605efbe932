from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.logging_config import get_logger
from services.site_audit.config import settings
from services.site_audit.crawler.extract import origin_of
from services.site_audit.db import repository
from services.site_audit.db.models import Audit, AuditCheck, CrawlQueueEntry, Page
from services.site_audit.enums import TERMINAL_STATUSES, AuditStatus

logger = get_logger(__name__)

FINISHED = [AuditStatus.COMPLETED.value, AuditStatus.STOPPED.value]


async def cleanup_crawl_queue(session: AsyncSession, audit_id: str) -> int:
    res = await session.execute(delete(CrawlQueueEntry).where(CrawlQueueEntry.audit_id == audit_id))
    await repository.commit(session)
    return res.rowcount or 0


async def _drop_details(session: AsyncSession, audit_ids: list[str]) -> None:
    if not audit_ids:
        return
    await session.execute(delete(AuditCheck).where(AuditCheck.audit_id.in_(audit_ids)))
    await session.execute(delete(Page).where(Page.audit_id.in_(audit_ids)))
    await session.execute(delete(CrawlQueueEntry).where(CrawlQueueEntry.audit_id.in_(audit_ids)))
    await repository.update_audits_archived(session, audit_ids)


async def cleanup_older_audit_details(
    session: AsyncSession, audit_id: str, tenant_id: str | None, url: str
) -> list[str]:
    """Drop pages, checks and queue rows of superseded audits.

    The audit rows and their scores stay for history. Tenanted audits are
    superseded by any newer finished audit of the same tenant; untenanted ones
    only by a newer audit of the same site.
    """
    created = select(Audit.created_at).where(Audit.id == audit_id).scalar_subquery()
    stmt = select(Audit.id, Audit.url).where(
        Audit.id != audit_id,
        Audit.created_at <= created,
        Audit.status.in_(FINISHED),
        Audit.archived_at.is_(None),
    )
    if tenant_id is not None:
        stmt = stmt.where(Audit.tenant_id == tenant_id)
    else:
        stmt = stmt.where(Audit.tenant_id.is_(None))
    res = await session.execute(stmt)
    origin = origin_of(url)
    older = [row.id for row in res if tenant_id is not None or origin_of(row.url) == origin]
    await _drop_details(session, older)
    if older:
        logger.info(
            "Dropped details of superseded audits",
            extra={"audit_id": audit_id, "tenant_id": tenant_id, "superseded": len(older)},
        )
    return older


async def run_periodic_cleanup(session: AsyncSession) -> dict:
    now = repository.utcnow()

    res = await session.execute(
        select(Audit.id).where(
            Audit.status.in_(FINISHED),
            Audit.archived_at.is_(None),
            Audit.completed_at < now - timedelta(days=settings.detail_retention_days),
        )
    )
    expired = list(res.scalars().all())
    await _drop_details(session, expired)

    res = await session.execute(
        select(Audit.id).where(
            Audit.tenant_id.is_(None),
            Audit.created_at < now - timedelta(days=settings.untenanted_retention_days),
        )
    )
    untenanted = list(res.scalars().all())
    if untenanted:
        await session.execute(delete(AuditCheck).where(AuditCheck.audit_id.in_(untenanted)))
        await session.execute(delete(Page).where(Page.audit_id.in_(untenanted)))
        await session.execute(delete(CrawlQueueEntry).where(CrawlQueueEntry.audit_id.in_(untenanted)))
        await session.execute(delete(Audit).where(Audit.id.in_(untenanted)))
        await repository.commit(session)

    terminal = select(Audit.id).where(Audit.status.in_([s.value for s in TERMINAL_STATUSES]))
    res = await session.execute(delete(CrawlQueueEntry).where(CrawlQueueEntry.audit_id.in_(terminal)))
    await repository.commit(session)

    stats = {
        "details_dropped": len(expired),
        "untenanted_deleted": len(untenanted),
        "queue_rows_purged": res.rowcount or 0,
    }
    logger.info("Periodic cleanup finished", extra=stats)
    return stats


async def recover_stale_batches(session: AsyncSession) -> list[str]:
    """Hand audits whose worker died back to the scheduler.

    An audit left in ``crawling`` or ``checking`` for longer than
    ``stale_batch_after_s`` is set back to ``batch_complete`` so the next batch
    resumes from the persisted queue. Site-wide rules already stored are not
    evaluated again when it finalizes. A ``stop_requested`` audit nobody picked
    up keeps its status, so the next batch finalizes it as stopped. Returns
    the ids that need a new batch.
    """
    cutoff = repository.utcnow() - timedelta(seconds=settings.stale_batch_after_s)
    resumable = []
    for audit in await repository.find_stale_audits(session, cutoff):
        status = AuditStatus(audit.status)
        target = status if status == AuditStatus.STOP_REQUESTED else AuditStatus.BATCH_COMPLETE
        if await repository.transition_status(session, audit.id, [status], target):
            logger.warning(
                "Recovered stalled audit",
                extra={"audit_id": audit.id, "batch": audit.current_batch, "stalled_in": audit.status},
            )
            resumable.append(audit.id)
    return resumable
