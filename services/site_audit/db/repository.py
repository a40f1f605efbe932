import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.site_audit.db.models import Audit, AuditCheck, Dismissal, Page
from services.site_audit.enums import AuditStatus
from services.site_audit.errors import AuditNotFound, PersistenceError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def commit(session: AsyncSession) -> None:
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise PersistenceError(str(e)) from e


async def create_audit(session: AsyncSession, url: str, tenant_id: str | None = None) -> Audit:
    now = utcnow()
    audit = Audit(
        id=str(uuid.uuid4()),
        tenant_id=tenant_id,
        url=url,
        status=AuditStatus.PENDING.value,
        pages_crawled=0,
        urls_discovered=0,
        failed_count=0,
        warning_count=0,
        passed_count=0,
        use_relaxed_tls=False,
        current_batch=0,
        created_at=now,
        updated_at=now,
    )
    session.add(audit)
    await commit(session)
    return audit


async def get_audit(session: AsyncSession, audit_id: str) -> Audit | None:
    return await session.get(Audit, audit_id, populate_existing=True)


async def require_audit(session: AsyncSession, audit_id: str) -> Audit:
    audit = await get_audit(session, audit_id)
    if audit is None:
        raise AuditNotFound(audit_id)
    return audit


async def transition_status(
    session: AsyncSession,
    audit_id: str,
    from_statuses: Iterable[AuditStatus],
    to_status: AuditStatus,
    **values: Any,
) -> bool:
    """Move the audit to ``to_status`` only if it is currently in one of ``from_statuses``."""
    stmt = (
        update(Audit)
        .where(Audit.id == audit_id, Audit.status.in_([s.value for s in from_statuses]))
        .values({"status": to_status.value, "updated_at": utcnow(), **values})
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    await commit(session)
    return res.rowcount == 1


async def claim_batch(session: AsyncSession, audit_id: str) -> Audit | None:
    """Atomically start a batch: ``pending|batch_complete -> crawling`` and bump the batch number.

    Returns the refreshed audit, or None when another invocation got there first
    or the audit is in any other state.
    """
    now = utcnow()
    stmt = (
        update(Audit)
        .where(
            Audit.id == audit_id,
            Audit.status.in_([AuditStatus.PENDING.value, AuditStatus.BATCH_COMPLETE.value]),
        )
        .values(
            status=AuditStatus.CRAWLING.value,
            current_batch=Audit.current_batch + 1,
            started_at=func.coalesce(Audit.started_at, now),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    await commit(session)
    if res.rowcount != 1:
        return None
    return await get_audit(session, audit_id)


async def update_audit(session: AsyncSession, audit_id: str, **values: Any) -> None:
    stmt = (
        update(Audit)
        .where(Audit.id == audit_id)
        .values({"updated_at": utcnow(), **values})
        .execution_options(synchronize_session=False)
    )
    await session.execute(stmt)
    await commit(session)


async def save_page(session: AsyncSession, audit_id: str, url: str, **fields: Any) -> Page:
    page = Page(audit_id=audit_id, url=url, crawled_at=utcnow(), **fields)
    session.add(page)
    await commit(session)
    return page


async def list_pages(session: AsyncSession, audit_id: str) -> list[Page]:
    res = await session.execute(select(Page).where(Page.audit_id == audit_id).order_by(Page.id))
    return list(res.scalars().all())


async def count_pages(session: AsyncSession, audit_id: str) -> int:
    res = await session.execute(select(func.count()).select_from(Page).where(Page.audit_id == audit_id))
    return int(res.scalar_one())


async def save_check_results(session: AsyncSession, rows: list[dict]) -> None:
    if not rows:
        return
    now = utcnow()
    session.add_all([AuditCheck(created_at=now, **row) for row in rows])
    await commit(session)


async def list_checks(session: AsyncSession, audit_id: str) -> list[AuditCheck]:
    res = await session.execute(select(AuditCheck).where(AuditCheck.audit_id == audit_id).order_by(AuditCheck.id))
    return list(res.scalars().all())


async def site_wide_check_names(session: AsyncSession, audit_id: str) -> set[str]:
    res = await session.execute(
        select(AuditCheck.check_name).where(AuditCheck.audit_id == audit_id, AuditCheck.is_site_wide.is_(True))
    )
    return set(res.scalars().all())


async def list_dismissals(session: AsyncSession, tenant_id: str | None) -> list[Dismissal]:
    if tenant_id is None:
        return []
    res = await session.execute(select(Dismissal).where(Dismissal.tenant_id == tenant_id))
    return list(res.scalars().all())


async def find_stale_audits(session: AsyncSession, updated_before: datetime) -> list[Audit]:
    res = await session.execute(
        select(Audit).where(
            Audit.status.in_(
                [AuditStatus.CRAWLING.value, AuditStatus.CHECKING.value, AuditStatus.STOP_REQUESTED.value]
            ),
            Audit.updated_at < updated_before,
        )
    )
    return list(res.scalars().all())


async def update_audits_archived(session: AsyncSession, audit_ids: list[str]) -> None:
    now = utcnow()
    await session.execute(
        update(Audit)
        .where(Audit.id.in_(audit_ids))
        .values(archived_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await commit(session)


async def add_dismissal(
    session: AsyncSession, tenant_id: str, check_name: str, url: str, dismissed_by: str | None = None
) -> bool:
    """Record a dismissal. Returns False when the same one already exists."""
    insert = pg_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
    stmt = (
        insert(Dismissal)
        .values(tenant_id=tenant_id, check_name=check_name, url=url, dismissed_by=dismissed_by, created_at=utcnow())
        .on_conflict_do_nothing(index_elements=["tenant_id", "check_name", "url"])
    )
    res = await session.execute(stmt)
    await commit(session)
    return res.rowcount == 1
