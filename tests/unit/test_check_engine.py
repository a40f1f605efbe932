import pytest

from services.site_audit.checks import base, engine
from services.site_audit.checks.base import CheckContext, CheckDefinition, failed, passed
from services.site_audit.checks.catalog import get_check, page_checks, site_wide_checks
from services.site_audit.checks.dismissals import DismissalFilter
from services.site_audit.db import repository
from services.site_audit.db.models import Dismissal
from services.site_audit.enums import CheckCategory, CheckPriority


def definition(name, site_wide=False, fix_guidance=None):
    return CheckDefinition(
        name=name,
        category=CheckCategory.TECHNICAL,
        priority=CheckPriority.RECOMMENDED,
        description=name,
        display_name=name,
        display_name_passed=name,
        fix_guidance=fix_guidance,
        site_wide=site_wide,
    )


@pytest.fixture
def custom_checks(monkeypatch):
    async def ok(ctx):
        return passed("fine")

    async def bad(ctx):
        return failed("broken thing")

    async def boom(ctx):
        raise RuntimeError("rule crashed")

    monkeypatch.setitem(base._EVALUATORS, "t_ok", ok)
    monkeypatch.setitem(base._EVALUATORS, "t_bad", bad)
    monkeypatch.setitem(base._EVALUATORS, "t_boom", boom)
    monkeypatch.setitem(base._EVALUATORS, "t_site", ok)


def test_catalog_is_split_by_scope():
    page_names = {c.name for c in page_checks()}
    site_names = {c.name for c in site_wide_checks()}
    assert {"missing_title", "missing_h1", "js_rendered_content"} <= page_names
    assert {"duplicate_titles", "invalid_ssl_certificate", "ai_crawlers_blocked"} <= site_names
    assert not page_names & site_names
    assert get_check("missing_h1").category == CheckCategory.TECHNICAL
    assert get_check("nope") is None


def test_result_row_falls_back_to_message_for_guidance():
    row = engine.result_row("a1", 7, definition("t_bad"), failed("broken thing"))
    assert row["fix_guidance"] == "broken thing"
    assert row["details"] == {"message": "broken thing"}
    row = engine.result_row("a1", 7, definition("t_bad", fix_guidance="Do X"), failed("broken thing"))
    assert row["fix_guidance"] == "Do X"


def test_dismissal_filter_matches_normalized_urls():
    f = DismissalFilter([Dismissal(tenant_id="t", check_name="missing_h1", url="https://x.test/")])
    assert f.is_dismissed("missing_h1", "https://x.test")
    assert f.is_dismissed("missing_h1", "https://x.test/#top")
    assert not f.is_dismissed("missing_h1", "https://x.test/about")
    assert not f.is_dismissed("missing_title", "https://x.test")
    assert len(f) == 1


@pytest.mark.asyncio
async def test_erroring_check_produces_no_result(session, custom_checks):
    audit = await repository.create_audit(session, "https://x.test")
    page = await repository.save_page(session, audit.id, "https://x.test")
    ctx = CheckContext(url="https://x.test", html="")

    rows = await engine.run_page_checks(
        session, audit.id, page.id, ctx, [definition("t_ok"), definition("t_boom"), definition("t_bad")], DismissalFilter()
    )
    assert {r["check_name"] for r in rows} == {"t_ok", "t_bad"}
    stored = await repository.list_checks(session, audit.id)
    assert {c.check_name: c.status for c in stored} == {"t_ok": "passed", "t_bad": "failed"}


@pytest.mark.asyncio
async def test_dismissed_check_is_not_evaluated(session, custom_checks):
    audit = await repository.create_audit(session, "https://x.test")
    page = await repository.save_page(session, audit.id, "https://x.test/a")
    ctx = CheckContext(url="https://x.test/a", html="")
    dismissals = DismissalFilter([Dismissal(tenant_id="t", check_name="t_bad", url="https://x.test/a")])

    rows = await engine.run_page_checks(
        session, audit.id, page.id, ctx, [definition("t_ok"), definition("t_bad")], dismissals
    )
    assert [r["check_name"] for r in rows] == ["t_ok"]


@pytest.mark.asyncio
async def test_site_wide_checks_are_written_once(session, custom_checks):
    audit = await repository.create_audit(session, "https://x.test")
    ctx = CheckContext(url="https://x.test", html="")
    defs = [definition("t_site", site_wide=True)]

    first = await engine.run_site_wide_checks(session, audit.id, "https://x.test", ctx, defs, DismissalFilter())
    second = await engine.run_site_wide_checks(session, audit.id, "https://x.test", ctx, defs, DismissalFilter())
    assert len(first) == 1
    assert second == []
    stored = await repository.list_checks(session, audit.id)
    assert len(stored) == 1
    assert stored[0].is_site_wide
    assert stored[0].page_id is None
