import asyncio
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Sequence

from prometheus_client import Counter, Histogram
from sqlalchemy.ext.asyncio import AsyncSession

from config.logging_config import audit_logger, get_logger
from services.site_audit import cleanup
from services.site_audit.checks.base import CheckContext, CheckDefinition, PageSnapshot
from services.site_audit.checks.catalog import page_checks, site_wide_checks
from services.site_audit.checks.dismissals import DismissalFilter
from services.site_audit.checks.engine import run_page_checks, run_site_wide_checks
from services.site_audit.config import settings
from services.site_audit.crawler.extract import (
    extract_links,
    extract_meta_description,
    extract_title,
    is_homepage,
    normalize_url,
    origin_of,
)
from services.site_audit.crawler.fetcher import FetchResult, fetch_page
from services.site_audit.crawler.frontier import CrawlFrontier, QueueItem
from services.site_audit.crawler.resources import classify, resource_title
from services.site_audit.db import repository
from services.site_audit.db.models import Audit, Page
from services.site_audit.db.session import get_session
from services.site_audit.enums import AuditStatus
from services.site_audit.errors import AuditNotFound, NoPagesCrawled, PersistenceError, SummaryGenerationError
from services.site_audit.scoring import score
from services.site_audit.summary import generate_summary

logger = get_logger(__name__)

pages_crawled_total = Counter(
    'site_audit_pages_crawled_total',
    'Pages fetched and stored',
    ['kind']
)

fetch_errors_total = Counter(
    'site_audit_fetch_errors_total',
    'Page fetches that failed at the transport level',
    ['kind']
)

batch_duration = Histogram(
    'site_audit_batch_duration_seconds',
    'Wall-clock duration of one audit batch'
)

STOPPED_BEFORE_FIRST_PAGE = "Audit was stopped before any pages were crawled"
UNREACHABLE = "Could not crawl the website. The site may be unreachable or blocking our crawler."


@dataclass
class BatchResult:
    audit_id: str
    status: AuditStatus
    batch: int = 0
    pages_processed: int = 0
    budget_exhausted: bool = False
    error: str | None = None

    @property
    def needs_continuation(self) -> bool:
        return self.status == AuditStatus.BATCH_COMPLETE


def snapshot(page: Page) -> PageSnapshot:
    last_modified = page.last_modified
    if last_modified is not None and last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=timezone.utc)
    return PageSnapshot(
        url=page.url,
        title=page.title,
        meta_description=page.meta_description,
        status_code=page.status_code,
        last_modified=last_modified,
        is_resource=page.is_resource,
    )


def _fetch_kind(error: str) -> str:
    e = error.lower()
    if "timeout" in e or "timed out" in e:
        return "timeout"
    if "certificate" in e or "ssl" in e:
        return "tls"
    if "name" in e or "resolve" in e or "dns" in e:
        return "dns"
    return "connection"


class AuditBatchRunner:
    """Drives one bounded slice of an audit.

    A slice claims the audit, crawls at most ``batch_size`` queue entries or
    until ``batch_max_duration_s`` elapses, and then either yields with
    ``batch_complete`` or finalizes the audit.
    """

    def __init__(
        self,
        session: AsyncSession,
        audit_id: str,
        page_checks: Sequence[CheckDefinition] | None = None,
        site_checks: Sequence[CheckDefinition] | None = None,
    ):
        self.session = session
        self.audit_id = audit_id
        self.page_checks = list(page_checks) if page_checks is not None else page_checks_default()
        self.site_checks = list(site_checks) if site_checks is not None else site_checks_default()
        self.frontier = CrawlFrontier(session, audit_id)
        self.audit: Audit | None = None
        self.dismissals = DismissalFilter()
        self.pages: list[PageSnapshot] = []
        self.relaxed_tls = False
        self.first_error: str | None = None

    async def run(self) -> BatchResult:
        audit = await repository.get_audit(self.session, self.audit_id)
        if audit is None:
            raise AuditNotFound(self.audit_id)
        status = AuditStatus(audit.status)
        if status.is_terminal:
            return BatchResult(self.audit_id, status, batch=audit.current_batch)

        if status == AuditStatus.STOP_REQUESTED:
            self.audit = audit
            return await self._guarded(self._finalize_stop_request)

        claimed = await repository.claim_batch(self.session, self.audit_id)
        if claimed is None:
            logger.info("Audit batch already claimed", extra={"audit_id": self.audit_id, "status": audit.status})
            current = await repository.require_audit(self.session, self.audit_id)
            return BatchResult(self.audit_id, AuditStatus(current.status), batch=current.current_batch)

        self.audit = claimed
        return await self._guarded(self._crawl_batch)

    async def _guarded(self, step) -> BatchResult:
        try:
            return await step()
        except Exception as e:
            await self._fail(f"Internal error: {e}" if str(e) else "Internal error")
            raise

    async def _prepare(self) -> None:
        self.relaxed_tls = self.audit.use_relaxed_tls
        self.dismissals = DismissalFilter(await repository.list_dismissals(self.session, self.audit.tenant_id))
        self.pages = [snapshot(p) for p in await repository.list_pages(self.session, self.audit_id)]

    async def _crawl_batch(self) -> BatchResult:
        audit = self.audit
        batch = audit.current_batch
        started = time.monotonic()
        audit_logger.log_batch_started(self.audit_id, batch, audit.url)

        await self._prepare()
        if batch == 1:
            await self.frontier.seed(audit.url)
            await repository.update_audit(
                self.session, self.audit_id, urls_discovered=await self.frontier.discovered_count()
            )

        processed = 0
        stopped = False
        budget_exhausted = False
        while True:
            if processed >= settings.batch_size or time.monotonic() - started >= settings.batch_max_duration_s:
                budget_exhausted = True
                break
            if await self._stop_requested():
                stopped = True
                break
            item = await self.frontier.claim_next()
            if item is None:
                break
            await self._process(item)
            processed += 1
            if settings.crawl_delay_s:
                await asyncio.sleep(settings.crawl_delay_s)

        duration = time.monotonic() - started
        batch_duration.observe(duration)
        audit_logger.log_batch_completed(self.audit_id, batch, processed, duration, budget_exhausted)

        if stopped:
            status = await self._finalize(stopped=True)
        elif budget_exhausted and await self.frontier.has_pending():
            if await repository.transition_status(
                self.session, self.audit_id, [AuditStatus.CRAWLING], AuditStatus.BATCH_COMPLETE
            ):
                status = AuditStatus.BATCH_COMPLETE
            else:
                status = await self._finalize(stopped=True)
        else:
            status = await self._finalize(stopped=False)

        return BatchResult(self.audit_id, status, batch=batch, pages_processed=processed, budget_exhausted=budget_exhausted)

    async def _finalize_stop_request(self) -> BatchResult:
        await self._prepare()
        status = await self._finalize(stopped=True)
        return BatchResult(self.audit_id, status, batch=self.audit.current_batch)

    async def _stop_requested(self) -> bool:
        current = await repository.get_audit(self.session, self.audit_id)
        return current is not None and current.status == AuditStatus.STOP_REQUESTED.value

    async def _process(self, item: QueueItem) -> None:
        url = item.url
        fetch_started = time.monotonic()
        fetched = await fetch_page(url, relaxed_tls=self.relaxed_tls)
        if fetched.used_relaxed_tls and not self.relaxed_tls:
            self.relaxed_tls = True
            logger.warning("Certificate rejected, keeping relaxed TLS for this audit", extra={"audit_id": self.audit_id, "url": url})
            await repository.update_audit(self.session, self.audit_id, use_relaxed_tls=True)

        if not fetched.ok:
            fetch_errors_total.labels(kind=_fetch_kind(fetched.error)).inc()
            audit_logger.log_fetch_failed(self.audit_id, url, fetched.error)
            self.first_error = self.first_error or fetched.error
            return

        kind = classify(url)
        if kind.is_resource:
            page = await repository.save_page(
                self.session,
                self.audit_id,
                url,
                title=resource_title(url),
                status_code=fetched.status_code,
                last_modified=fetched.last_modified,
                is_resource=True,
                resource_type=kind.resource_type.value,
            )
            await self._page_stored(page, "resource", fetched, fetch_started)
            return

        keep_html = item.depth == 0 or is_homepage(url)
        page = await repository.save_page(
            self.session,
            self.audit_id,
            url,
            title=extract_title(fetched.html),
            meta_description=extract_meta_description(fetched.html),
            status_code=fetched.status_code,
            last_modified=fetched.last_modified,
            is_resource=False,
            html=fetched.html if keep_html else None,
        )
        await self._page_stored(page, "html", fetched, fetch_started)

        ctx = CheckContext(
            url=page.url,
            html=fetched.html,
            title=page.title,
            status_code=page.status_code,
            pages=tuple(self.pages),
            relaxed_tls=self.relaxed_tls,
        )
        await run_page_checks(self.session, self.audit_id, page.id, ctx, self.page_checks, self.dismissals)

        if fetched.status_code is not None and 200 <= fetched.status_code < 300:
            links = extract_links(fetched.html, url, fetched.final_url)
            if links:
                await self.frontier.enqueue(links, depth=item.depth + 1)
                await repository.update_audit(
                    self.session, self.audit_id, urls_discovered=await self.frontier.discovered_count()
                )

    async def _page_stored(self, page: Page, kind: str, fetched: FetchResult, fetch_started: float) -> None:
        self.pages.append(snapshot(page))
        pages_crawled_total.labels(kind=kind).inc()
        audit_logger.log_page_crawled(self.audit_id, page.url, fetched.status_code, time.monotonic() - fetch_started)
        await repository.update_audit(self.session, self.audit_id, pages_crawled=len(self.pages))

    def _homepage(self, pages: list[Page]) -> Page:
        root = normalize_url(self.audit.url)
        for p in pages:
            if p.url == root and not p.is_resource:
                return p
        for p in pages:
            if is_homepage(p.url) and not p.is_resource:
                return p
        return pages[0]

    async def _site_wide_context(self, pages: list[Page]) -> CheckContext:
        home = self._homepage(pages)
        html = home.html
        if html is None:
            fetched = await fetch_page(home.url, relaxed_tls=self.relaxed_tls)
            html = fetched.html
        return CheckContext(
            url=home.url,
            html=html,
            title=home.title,
            status_code=home.status_code,
            pages=tuple(snapshot(p) for p in pages),
            relaxed_tls=self.relaxed_tls,
        )

    async def _finalize(self, stopped: bool) -> AuditStatus:
        """Run site-wide checks, score, summarise and move to a terminal state.

        Returns the status the audit ends in. When another invocation is
        already finalizing, returns the current status untouched. A stop that
        lands after the last poll still ends the audit as ``stopped``.
        """
        entered = await self._enter_checking(stopped)
        if entered is None:
            current = await repository.require_audit(self.session, self.audit_id)
            return AuditStatus(current.status)
        stopped = entered

        pages = await repository.list_pages(self.session, self.audit_id)
        if not pages:
            message = STOPPED_BEFORE_FIRST_PAGE if stopped else (
                f"Could not crawl the website: {self.first_error}" if self.first_error else UNREACHABLE
            )
            logger.error(
                str(NoPagesCrawled(message)),
                extra={"audit_id": self.audit_id, "url": self.audit.url},
            )
            await repository.transition_status(
                self.session,
                self.audit_id,
                [AuditStatus.CHECKING],
                AuditStatus.FAILED,
                error_message=message,
                completed_at=repository.utcnow(),
            )
            await self._cleanup(AuditStatus.FAILED)
            audit_logger.log_audit_finished(self.audit_id, AuditStatus.FAILED.value, error=message)
            return AuditStatus.FAILED

        ctx = await self._site_wide_context(pages)
        await run_site_wide_checks(
            self.session, self.audit_id, origin_of(self.audit.url), ctx, self.site_checks, self.dismissals
        )

        checks = await repository.list_checks(self.session, self.audit_id)
        scores = score(checks)

        summary = None
        try:
            summary = await generate_summary(self.audit.url, len(pages), scores, checks)
        except SummaryGenerationError as e:
            logger.warning("Executive summary failed", extra={"audit_id": self.audit_id, "error": str(e)})

        final = AuditStatus.STOPPED if stopped else AuditStatus.COMPLETED
        await repository.transition_status(
            self.session,
            self.audit_id,
            [AuditStatus.CHECKING],
            final,
            executive_summary=summary,
            completed_at=repository.utcnow(),
            pages_crawled=len(pages),
            **scores.as_audit_values(),
        )
        await self._cleanup(final)
        audit_logger.log_audit_finished(self.audit_id, final.value, overall_score=scores.overall)
        return final

    async def _enter_checking(self, stopped: bool) -> bool | None:
        """Claim the audit for finalization.

        Returns whether it was claimed out of ``stop_requested``, or None when
        it was in neither source state.
        """
        if not stopped and await repository.transition_status(
            self.session, self.audit_id, [AuditStatus.CRAWLING], AuditStatus.CHECKING
        ):
            return False
        if await repository.transition_status(
            self.session, self.audit_id, [AuditStatus.STOP_REQUESTED], AuditStatus.CHECKING
        ):
            return True
        return None

    async def _cleanup(self, status: AuditStatus) -> None:
        try:
            await cleanup.cleanup_crawl_queue(self.session, self.audit_id)
            if status != AuditStatus.FAILED:
                await cleanup.cleanup_older_audit_details(
                    self.session, self.audit_id, self.audit.tenant_id, self.audit.url
                )
        except PersistenceError:
            logger.exception("Post-audit cleanup failed", extra={"audit_id": self.audit_id})

    async def _fail(self, message: str) -> None:
        logger.error("Audit batch failed", extra={"audit_id": self.audit_id, "error": message}, exc_info=True)
        await self.session.rollback()
        await repository.transition_status(
            self.session,
            self.audit_id,
            [
                AuditStatus.PENDING,
                AuditStatus.CRAWLING,
                AuditStatus.BATCH_COMPLETE,
                AuditStatus.CHECKING,
                AuditStatus.STOP_REQUESTED,
            ],
            AuditStatus.FAILED,
            error_message=message,
            completed_at=repository.utcnow(),
        )
        audit_logger.log_audit_finished(self.audit_id, AuditStatus.FAILED.value, error=message)


def page_checks_default() -> list[CheckDefinition]:
    return page_checks()


def site_checks_default() -> list[CheckDefinition]:
    return site_wide_checks()


async def run_audit_batch(
    audit_id: str,
    page_checks: Sequence[CheckDefinition] | None = None,
    site_checks: Sequence[CheckDefinition] | None = None,
) -> BatchResult:
    """Run one batch of an audit and report where it was left.

    Safe to invoke repeatedly: a call that cannot claim the audit returns its
    current status without doing any work. Unexpected errors mark the audit
    ``failed`` and propagate to the caller.
    """
    async with get_session() as session:
        return await AuditBatchRunner(session, audit_id, page_checks, site_checks).run()
