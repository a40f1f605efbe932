import httpx
import pytest
import respx

from services.site_audit import runner
from services.site_audit.checks.catalog import get_check
from services.site_audit.config import settings
from services.site_audit.crawler.frontier import CrawlFrontier
from services.site_audit.db import repository
from services.site_audit.enums import AuditStatus
from services.site_audit.runner import AuditBatchRunner, run_audit_batch

ROOT = "http://x.test"

PAGES = {
    "http://x.test/": (
        200,
        '<html><head><title>Home</title></head><body><h1>Home</h1>'
        '<a href="/a">A</a><a href="/b">B</a><a href="/files/guide.pdf">Guide</a>'
        '<a href="https://other.test/">Elsewhere</a></body></html>',
    ),
    "http://x.test/a": (200, '<html><head><title>A</title></head><body><h1>A</h1><a href="/c">C</a><a href="/">Home</a></body></html>'),
    "http://x.test/b": (200, "<html><head><title>Home</title></head><body><p>no heading</p></body></html>"),
    "http://x.test/c": (404, "<html><head><title>Not found</title></head><body><a href=\"/d\">D</a></body></html>"),
}

PAGE_CHECKS = [get_check("missing_title"), get_check("missing_h1")]
SITE_CHECKS = [get_check("duplicate_titles"), get_check("broken_internal_links")]


def mock_site():
    router = respx.mock(assert_all_called=False)
    for url, (status, html) in PAGES.items():
        router.get(url).respond(status, html=html)
    router.get("http://x.test/files/guide.pdf").respond(200, content=b"%PDF-1.4", headers={"Content-Type": "application/pdf"})
    router.route().respond(404)
    return router


def batch(session, audit_id):
    return AuditBatchRunner(session, audit_id, PAGE_CHECKS, SITE_CHECKS).run()


@pytest.mark.asyncio
async def test_full_audit_in_one_batch(session):
    audit = await repository.create_audit(session, ROOT)
    with mock_site():
        result = await batch(session, audit.id)

    assert result.status == AuditStatus.COMPLETED
    assert not result.needs_continuation
    assert result.pages_processed == 5

    pages = await repository.list_pages(session, audit.id)
    assert [p.url for p in pages] == [
        "http://x.test",
        "http://x.test/a",
        "http://x.test/b",
        "http://x.test/files/guide.pdf",
        "http://x.test/c",
    ]
    assert pages[0].html is not None
    assert all(p.html is None for p in pages[1:])

    audit = await repository.get_audit(session, audit.id)
    assert audit.pages_crawled == 5
    assert audit.urls_discovered == 5
    assert audit.current_batch == 1
    assert audit.completed_at is not None
    assert (audit.seo_score, audit.technical_score, audit.ai_readiness_score) == (67, 50, 100)
    assert audit.overall_score == 72
    assert (audit.failed_count, audit.warning_count, audit.passed_count) == (4, 0, 6)

    checks = await repository.list_checks(session, audit.id)
    assert audit.failed_count + audit.warning_count + audit.passed_count == len(checks)
    site_wide = {c.check_name: c.status for c in checks if c.is_site_wide}
    assert site_wide == {"duplicate_titles": "failed", "broken_internal_links": "failed"}

    assert not await CrawlFrontier(session, audit.id).has_pending()
    assert await CrawlFrontier(session, audit.id).discovered_count() == 0


@pytest.mark.asyncio
async def test_resources_are_stored_without_checks(session):
    audit = await repository.create_audit(session, ROOT)
    with mock_site():
        await batch(session, audit.id)

    pages = {p.url: p for p in await repository.list_pages(session, audit.id)}
    pdf = pages["http://x.test/files/guide.pdf"]
    assert pdf.is_resource
    assert pdf.resource_type == "pdf"
    assert pdf.title == "guide.pdf"
    checks = await repository.list_checks(session, audit.id)
    assert not [c for c in checks if c.page_id == pdf.id]


@pytest.mark.asyncio
async def test_audit_resumes_across_batches(session, monkeypatch):
    monkeypatch.setattr(settings, "batch_size", 2)
    audit = await repository.create_audit(session, ROOT)

    with mock_site():
        first = await batch(session, audit.id)
        assert first.status == AuditStatus.BATCH_COMPLETE
        assert first.budget_exhausted
        assert first.needs_continuation
        assert await repository.count_pages(session, audit.id) == 2

        second = await batch(session, audit.id)
        assert second.status == AuditStatus.BATCH_COMPLETE
        assert await repository.count_pages(session, audit.id) == 4

        third = await batch(session, audit.id)

    assert third.status == AuditStatus.COMPLETED
    assert third.batch == 3
    pages = await repository.list_pages(session, audit.id)
    assert len(pages) == len({p.url for p in pages}) == 5
    assert len(await repository.list_checks(session, audit.id)) == 10

    audit = await repository.get_audit(session, audit.id)
    assert (audit.seo_score, audit.technical_score, audit.ai_readiness_score) == (67, 50, 100)
    assert audit.overall_score == 72
    assert (audit.failed_count, audit.warning_count, audit.passed_count) == (4, 0, 6)


@pytest.mark.asyncio
async def test_stop_request_between_batches_finalizes_as_stopped(session, monkeypatch):
    monkeypatch.setattr(settings, "batch_size", 2)
    audit = await repository.create_audit(session, ROOT)

    with mock_site():
        await batch(session, audit.id)
        assert await repository.transition_status(
            session, audit.id, [AuditStatus.BATCH_COMPLETE], AuditStatus.STOP_REQUESTED
        )
        result = await batch(session, audit.id)

    assert result.status == AuditStatus.STOPPED
    audit = await repository.get_audit(session, audit.id)
    assert audit.status == AuditStatus.STOPPED.value
    assert audit.pages_crawled == 2
    assert audit.overall_score is not None
    checks = await repository.list_checks(session, audit.id)
    assert {c.check_name for c in checks if c.is_site_wide} == {"duplicate_titles", "broken_internal_links"}


def stop_after_fetches(monkeypatch, session, audit_id, count):
    """Request a stop while the ``count``-th page is being fetched."""
    real_fetch = runner.fetch_page
    fetched = []

    async def fetch_then_stop(url, relaxed_tls=False):
        fetched.append(url)
        result = await real_fetch(url, relaxed_tls=relaxed_tls)
        if len(fetched) == count:
            assert await repository.transition_status(
                session, audit_id, [AuditStatus.CRAWLING], AuditStatus.STOP_REQUESTED
            )
        return result

    monkeypatch.setattr(runner, "fetch_page", fetch_then_stop)
    return fetched


@pytest.mark.asyncio
async def test_stop_during_crawl_finalizes_as_stopped(session, monkeypatch):
    audit = await repository.create_audit(session, ROOT)
    fetched = stop_after_fetches(monkeypatch, session, audit.id, 2)

    with mock_site():
        result = await batch(session, audit.id)

    assert result.status == AuditStatus.STOPPED
    assert not result.needs_continuation
    assert fetched == ["http://x.test", "http://x.test/a"]
    audit = await repository.get_audit(session, audit.id)
    assert audit.status == AuditStatus.STOPPED.value
    assert audit.pages_crawled == 2
    assert audit.overall_score is not None
    checks = await repository.list_checks(session, audit.id)
    site_wide = sorted(c.check_name for c in checks if c.is_site_wide)
    assert site_wide == ["broken_internal_links", "duplicate_titles"]
    assert not await CrawlFrontier(session, audit.id).has_pending()


@pytest.mark.asyncio
async def test_stop_on_last_page_of_drained_queue(session, monkeypatch):
    monkeypatch.setattr(settings, "batch_size", 1)
    audit = await repository.create_audit(session, ROOT)
    stop_after_fetches(monkeypatch, session, audit.id, 1)

    with respx.mock(assert_all_called=False) as router:
        router.get("http://x.test/").respond(200, html="<html><head><title>Solo</title></head><body><h1>Solo</h1></body></html>")
        router.route().respond(404)
        result = await batch(session, audit.id)

    assert result.status == AuditStatus.STOPPED
    assert result.budget_exhausted
    audit = await repository.get_audit(session, audit.id)
    assert audit.status == AuditStatus.STOPPED.value
    assert audit.pages_crawled == 1
    checks = await repository.list_checks(session, audit.id)
    assert len([c for c in checks if c.is_site_wide]) == 2


@pytest.mark.asyncio
async def test_stop_before_first_page_fails_with_reason(session):
    audit = await repository.create_audit(session, ROOT)
    await repository.transition_status(session, audit.id, [AuditStatus.PENDING], AuditStatus.STOP_REQUESTED)

    result = await batch(session, audit.id)

    assert result.status == AuditStatus.FAILED
    audit = await repository.get_audit(session, audit.id)
    assert audit.error_message == runner.STOPPED_BEFORE_FIRST_PAGE
    assert audit.overall_score is None


@pytest.mark.asyncio
async def test_unreachable_site_fails(session):
    audit = await repository.create_audit(session, ROOT)
    with respx.mock(assert_all_called=False) as router:
        router.get("http://x.test/").mock(side_effect=httpx.ConnectError("Name or service not known"))
        result = await batch(session, audit.id)

    assert result.status == AuditStatus.FAILED
    audit = await repository.get_audit(session, audit.id)
    assert audit.error_message.startswith("Could not crawl the website: ")
    assert "Name or service not known" in audit.error_message
    assert await repository.list_checks(session, audit.id) == []


@pytest.mark.asyncio
async def test_dismissed_check_is_never_recorded(session):
    await repository.add_dismissal(session, "t1", "missing_h1", "http://x.test/")
    audit = await repository.create_audit(session, ROOT, tenant_id="t1")
    with mock_site():
        await batch(session, audit.id)

    pages = {p.url: p.id for p in await repository.list_pages(session, audit.id)}
    checks = await repository.list_checks(session, audit.id)
    h1 = [c for c in checks if c.check_name == "missing_h1"]
    assert len(h1) == 3
    assert pages["http://x.test"] not in {c.page_id for c in h1}

    # technical is left with /a passed, /b and /c failed: 3 of 9 weight
    audit = await repository.get_audit(session, audit.id)
    assert audit.technical_score == 33
    assert audit.overall_score == 67
    assert (audit.failed_count, audit.warning_count, audit.passed_count) == (4, 0, 5)


@pytest.mark.asyncio
async def test_claimed_or_finished_audit_is_left_alone(session):
    audit = await repository.create_audit(session, ROOT)
    await repository.transition_status(session, audit.id, [AuditStatus.PENDING], AuditStatus.CRAWLING)

    result = await batch(session, audit.id)
    assert result.status == AuditStatus.CRAWLING
    assert result.pages_processed == 0
    assert await repository.count_pages(session, audit.id) == 0

    await repository.transition_status(session, audit.id, [AuditStatus.CRAWLING], AuditStatus.COMPLETED)
    result = await batch(session, audit.id)
    assert result.status == AuditStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_audit_batch_opens_its_own_session(session):
    audit = await repository.create_audit(session, ROOT)
    with mock_site():
        result = await run_audit_batch(audit.id, page_checks=PAGE_CHECKS, site_checks=SITE_CHECKS)
    assert result.status == AuditStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_audit_raises(session):
    with pytest.raises(runner.AuditNotFound):
        await batch(session, "missing")
