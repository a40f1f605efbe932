from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.site_audit.crawler.extract import normalize_url
from services.site_audit.db.models import CrawlQueueEntry
from services.site_audit.db.repository import commit, utcnow


@dataclass(frozen=True)
class QueueItem:
    url: str
    depth: int


class CrawlFrontier:
    """Persisted breadth-first crawl queue for one audit.

    Entries are unique per (audit, url). ``claim_next`` marks an entry crawled
    before it is handed out, so a worker killed mid-fetch drops that page
    instead of retrying it forever.
    """

    def __init__(self, session: AsyncSession, audit_id: str):
        self.session = session
        self.audit_id = audit_id

    def _insert(self):
        if self.session.bind.dialect.name == "postgresql":
            return pg_insert(CrawlQueueEntry)
        return sqlite_insert(CrawlQueueEntry)

    async def seed(self, root_url: str) -> None:
        await self.enqueue([root_url], depth=0)

    async def enqueue(self, urls: Iterable[str], depth: int) -> None:
        now = utcnow()
        seen: set[str] = set()
        rows = []
        for u in urls:
            nu = normalize_url(u)
            if not nu or nu in seen:
                continue
            seen.add(nu)
            rows.append({"audit_id": self.audit_id, "url": nu, "depth": depth, "discovered_at": now})
        if not rows:
            return
        stmt = self._insert().values(rows).on_conflict_do_nothing(index_elements=["audit_id", "url"])
        await self.session.execute(stmt)
        await commit(self.session)

    async def claim_next(self) -> QueueItem | None:
        while True:
            res = await self.session.execute(
                select(CrawlQueueEntry.id, CrawlQueueEntry.url, CrawlQueueEntry.depth)
                .where(CrawlQueueEntry.audit_id == self.audit_id, CrawlQueueEntry.crawled_at.is_(None))
                .order_by(CrawlQueueEntry.depth, CrawlQueueEntry.discovered_at, CrawlQueueEntry.id)
                .limit(1)
            )
            row = res.first()
            if row is None:
                return None
            claimed = await self.session.execute(
                update(CrawlQueueEntry)
                .where(CrawlQueueEntry.id == row.id, CrawlQueueEntry.crawled_at.is_(None))
                .values(crawled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await commit(self.session)
            if claimed.rowcount == 1:
                return QueueItem(url=row.url, depth=row.depth)

    async def has_pending(self) -> bool:
        res = await self.session.execute(
            select(CrawlQueueEntry.id)
            .where(CrawlQueueEntry.audit_id == self.audit_id, CrawlQueueEntry.crawled_at.is_(None))
            .limit(1)
        )
        return res.first() is not None

    async def discovered_count(self) -> int:
        res = await self.session.execute(
            select(func.count()).select_from(CrawlQueueEntry).where(CrawlQueueEntry.audit_id == self.audit_id)
        )
        return int(res.scalar_one())
