import json
from types import SimpleNamespace

import httpx
import pytest
import respx
from tenacity import wait_none

from services.site_audit import summary
from services.site_audit.config import settings
from services.site_audit.errors import SummaryGenerationError
from services.site_audit.scoring import score

SERVICE = "https://llm.test/v1/generate"


def check(name, category, priority, status, message=""):
    return SimpleNamespace(
        check_type=category,
        check_name=name,
        priority=priority,
        status=status,
        display_name=name.replace("_", " ").title(),
        details={"message": message} if message else None,
    )


CHECKS = [
    check("missing_title", "seo", "critical", "failed", "Page has no title"),
    check("multiple_h1", "technical", "recommended", "warning", "Two h1 headings"),
    check("missing_llms_txt", "ai_readiness", "critical", "passed"),
]


@pytest.fixture
def summary_service(monkeypatch):
    monkeypatch.setattr(settings, "summary_service_url", SERVICE)
    monkeypatch.setattr(settings, "summary_api_key", "secret")
    monkeypatch.setattr(summary._request_summary.retry, "wait", wait_none())


def test_build_prompt_sections():
    prompt = summary.build_prompt("https://x.test", 12, score(CHECKS), CHECKS)
    assert "- URL: https://x.test" in prompt
    assert "- Pages Analyzed: 12" in prompt
    assert "## Critical Issues (1 found)\n- Missing Title: Page has no title" in prompt
    assert "## Recommended Fixes (0 found)\nNone" in prompt
    assert "## Warnings (1 found)" in prompt
    assert "- AI-Readiness: 1 passed" in prompt


@pytest.mark.asyncio
async def test_summary_disabled_without_service():
    assert await summary.generate_summary("https://x.test", 1, score(CHECKS), CHECKS) is None


@pytest.mark.asyncio
async def test_generate_summary(summary_service):
    with respx.mock(assert_all_called=False) as router:
        route = router.post(SERVICE).respond(200, json={"text": "The site is in decent shape."})
        text = await summary.generate_summary("https://x.test", 3, score(CHECKS), CHECKS)
    assert text == "The site is in decent shape."
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer secret"
    assert json.loads(request.content)["model"] == settings.summary_model


@pytest.mark.asyncio
async def test_generate_summary_retries_transport_errors(summary_service):
    with respx.mock(assert_all_called=False) as router:
        route = router.post(SERVICE)
        route.side_effect = [httpx.ConnectError("down"), httpx.Response(200, json={"text": "ok"})]
        text = await summary.generate_summary("https://x.test", 3, score(CHECKS), CHECKS)
    assert text == "ok"
    assert route.call_count == 2


@pytest.mark.asyncio
async def test_generate_summary_wraps_failures(summary_service):
    with respx.mock(assert_all_called=False) as router:
        router.post(SERVICE).respond(500)
        with pytest.raises(SummaryGenerationError):
            await summary.generate_summary("https://x.test", 3, score(CHECKS), CHECKS)

    with respx.mock(assert_all_called=False) as router:
        router.post(SERVICE).respond(200, json={"unexpected": True})
        with pytest.raises(SummaryGenerationError):
            await summary.generate_summary("https://x.test", 3, score(CHECKS), CHECKS)


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"text": None}, {"text": 42}, {"text": "   "}])
async def test_generate_summary_rejects_missing_text(summary_service, payload):
    with respx.mock(assert_all_called=False) as router:
        router.post(SERVICE).respond(200, json=payload)
        with pytest.raises(SummaryGenerationError, match="no text"):
            await summary.generate_summary("https://x.test", 3, score(CHECKS), CHECKS)
