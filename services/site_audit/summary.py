from typing import Protocol, Sequence

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.logging_config import get_logger
from services.site_audit.config import settings
from services.site_audit.errors import SummaryGenerationError
from services.site_audit.scoring import AuditScores

logger = get_logger(__name__)


class SummaryCheck(Protocol):
    check_type: str
    check_name: str
    priority: str
    status: str
    display_name: str | None
    details: dict | None


def interpret(score: int) -> str:
    if score >= 85:
        return "Excellent"
    if score >= 70:
        return "Good"
    if score >= 50:
        return "Needs Work"
    return "Poor"


def _line(check: SummaryCheck) -> str:
    name = check.display_name or check.check_name.replace("_", " ")
    message = (check.details or {}).get("message", "")
    return f"- {name}: {message}"


def _section(title: str, checks: list, limit: int) -> str:
    body = "\n".join(_line(c) for c in checks[:limit]) if checks else "None"
    return f"## {title} ({len(checks)} found)\n{body}"


def build_prompt(url: str, pages_crawled: int, scores: AuditScores, checks: Sequence[SummaryCheck]) -> str:
    critical = [c for c in checks if c.priority == "critical" and c.status == "failed"]
    recommended = [c for c in checks if c.priority == "recommended" and c.status == "failed"]
    warnings = [c for c in checks if c.status == "warning"]
    passed = [c for c in checks if c.status == "passed"]

    def passed_in(category: str) -> int:
        return sum(1 for c in passed if c.check_type == category)

    return "\n\n".join([
        "You are writing an executive summary for a website SEO and AI-readiness audit report.",
        "## Site Information\n"
        f"- URL: {url}\n"
        f"- Pages Analyzed: {pages_crawled}\n"
        f"- Overall Score: {scores.overall}/100 ({interpret(scores.overall)})",
        "## Category Scores\n"
        f"- SEO Score: {scores.seo}/100 ({interpret(scores.seo)})\n"
        f"- AI-Readiness Score: {scores.ai_readiness}/100 ({interpret(scores.ai_readiness)})\n"
        f"- Technical Score: {scores.technical}/100 ({interpret(scores.technical)})",
        _section("Critical Issues", critical, 5),
        _section("Recommended Fixes", recommended, 5),
        _section("Warnings", warnings, 3),
        "## Passed Checks\n"
        f"- SEO: {passed_in('seo')} passed\n"
        f"- AI-Readiness: {passed_in('ai_readiness')} passed\n"
        f"- Technical: {passed_in('technical')} passed",
        "---",
        "Write a 3-4 paragraph executive summary of 200-300 words in plain text. "
        "Start with an overall assessment of the score (Poor below 50, Needs Work 50-70, Good 70-85, "
        "Excellent 85 and above) and the site's strengths. Then explain the top three critical issues "
        "and their business impact, suggest two or three quick wins with rough effort estimates, "
        "and close with a recommended order of fixes. Keep the tone professional and avoid jargon.",
    ])


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def _request_summary(prompt: str) -> str:
    headers = {"Content-Type": "application/json"}
    if settings.summary_api_key:
        headers["Authorization"] = f"Bearer {settings.summary_api_key}"
    async with httpx.AsyncClient(timeout=settings.summary_timeout_s) as client:
        r = await client.post(
            settings.summary_service_url,
            json={"model": settings.summary_model, "prompt": prompt},
            headers=headers,
        )
        r.raise_for_status()
        return r.json()["text"]


async def generate_summary(
    url: str, pages_crawled: int, scores: AuditScores, checks: Sequence[SummaryCheck]
) -> str | None:
    """Ask the text-generation service for an executive summary.

    Returns None when no service is configured. Any failure is raised as
    ``SummaryGenerationError`` for the caller to log and ignore.
    """
    if not settings.summary_service_url:
        return None
    prompt = build_prompt(url, pages_crawled, scores, checks)
    try:
        text = await _request_summary(prompt)
    except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
        raise SummaryGenerationError(str(e) or e.__class__.__name__) from e
    if not isinstance(text, str) or not text.strip():
        raise SummaryGenerationError(f"Summary service returned no text: {text!r}")
    logger.info("Executive summary generated", extra={"url": url, "chars": len(text)})
    return text
