import json
import re
import time
from datetime import datetime, timedelta, timezone

import httpx

from services.site_audit.checks.base import (
    CheckContext,
    CheckDefinition,
    CheckOutcome,
    auxiliary_client,
    failed,
    passed,
    register,
    warning,
)
from services.site_audit.crawler.extract import origin_of
from services.site_audit.enums import CheckCategory, CheckPriority

AI = CheckCategory.AI_READINESS

AI_CRAWLERS = ("GPTBot", "PerplexityBot", "ClaudeBot", "ChatGPT-User", "Anthropic-AI")
STALE_AFTER_DAYS = 90
FAST_RESPONSE_S = 2.0
SLOW_RESPONSE_S = 5.0
RESPONSE_TIMEOUT_S = 10.0
MARKDOWN_PATHS = ("/llms-full.txt", "/README.md", "/docs.md", "/about.md", "/index.md")
MARKDOWN_CONTENT_TYPES = ("text/markdown", "text/plain", "text/x-markdown")
ORGANIZATION_TYPES = {"Organization", "LocalBusiness", "Corporation"}

_LASTMOD = re.compile(r"<lastmod>([^<]+)</lastmod>", re.I)


@register(
    CheckDefinition(
        name="js_rendered_content",
        category=AI,
        priority=CheckPriority.CRITICAL,
        description="AI crawlers do not execute JavaScript, content must be in the initial HTML",
        display_name="JavaScript-Dependent Content",
        display_name_passed="Server-Rendered Content",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/javascript/javascript-seo-basics",
    )
)
async def js_rendered_content(ctx: CheckContext) -> CheckOutcome:
    soup = ctx.soup()
    script_count = len(soup.find_all("script"))
    is_spa = bool(soup.select("#root, #__next, [data-reactroot], #app, [ng-app], [data-ng-app], app-root"))

    for el in soup.find_all(["script", "style", "noscript", "nav", "header", "footer"]):
        el.decompose()
    body = soup.body or soup
    word_count = len(body.get_text(" ", strip=True).split())
    paragraph_count = len(soup.find_all("p"))
    heading_count = len(soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]))

    if word_count >= 100 and (paragraph_count >= 2 or heading_count >= 1):
        return passed(
            f"Page has {word_count} words of server-rendered content that AI crawlers can read.",
            word_count=word_count,
            paragraph_count=paragraph_count,
        )
    if is_spa and word_count < 50:
        return failed(
            f"Page looks like a JavaScript single-page app with only {word_count} words in the initial HTML. "
            "Crawlers that do not run JavaScript see an almost empty page. Render on the server.",
            word_count=word_count,
            is_spa=True,
        )
    if word_count < 50 and script_count > 10:
        return failed(
            f"Page has only {word_count} words but {script_count} script tags, so content is probably "
            "rendered by JavaScript.",
            word_count=word_count,
            script_count=script_count,
        )
    if word_count < 100:
        return warning(
            f"Page has only {word_count} words in the initial HTML. Check that important content is server-rendered.",
            word_count=word_count,
        )
    return passed(f"Page has {word_count} words of server-rendered content.", word_count=word_count)


async def _get_text(ctx: CheckContext, url: str) -> str | None:
    try:
        async with auxiliary_client(ctx) as client:
            r = await client.get(url)
    except httpx.HTTPError:
        return None
    return r.text if r.is_success else None


def blocked_crawlers(robots_text: str, agents=AI_CRAWLERS) -> list[str]:
    """Return the agents that robots.txt disallows from the whole site.

    An agent named in its own group follows that group only; otherwise the
    ``*`` group applies.
    """
    groups: list[tuple[set[str], list[str]]] = []
    agents_open = False
    for raw in robots_text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if ":" not in line:
            continue
        key, value = (s.strip() for s in line.split(":", 1))
        key = key.lower()
        if key == "user-agent":
            if not agents_open:
                groups.append((set(), []))
                agents_open = True
            groups[-1][0].add(value.lower())
        elif key == "disallow" and groups:
            agents_open = False
            groups[-1][1].append(value)
        else:
            agents_open = False

    def rules_for(agent: str) -> list[str] | None:
        named = [rules for names, rules in groups if agent.lower() in names]
        if named:
            return [r for rules in named for r in rules]
        wildcard = [rules for names, rules in groups if "*" in names]
        return [r for rules in wildcard for r in rules] if wildcard else None

    return [a for a in agents if "/" in (rules_for(a) or [])]


@register(
    CheckDefinition(
        name="ai_crawlers_blocked",
        category=AI,
        priority=CheckPriority.CRITICAL,
        description="robots.txt should not block AI crawlers like GPTBot or ClaudeBot",
        display_name="AI Crawlers Blocked",
        display_name_passed="AI Crawlers Allowed",
        learn_more_url="https://platform.openai.com/docs/bots",
        site_wide=True,
    )
)
async def ai_crawlers_blocked(ctx: CheckContext) -> CheckOutcome:
    text = await _get_text(ctx, f"{origin_of(ctx.url)}/robots.txt")
    if text is None:
        return passed("No robots.txt, AI crawlers are not blocked")
    blocked = blocked_crawlers(text)
    if blocked:
        return failed(f"AI crawlers blocked: {', '.join(blocked)}", blocked=blocked)
    return passed("robots.txt allows AI crawlers")


@register(
    CheckDefinition(
        name="missing_llms_txt",
        category=AI,
        priority=CheckPriority.CRITICAL,
        description="/llms.txt describes the site for language models",
        display_name="Missing llms.txt File",
        display_name_passed="llms.txt File",
        learn_more_url="https://llmstxt.org/",
        fix_guidance="Publish /llms.txt with a short markdown overview of the site and links to its key pages.",
        site_wide=True,
    )
)
async def missing_llms_txt(ctx: CheckContext) -> CheckOutcome:
    try:
        async with auxiliary_client(ctx) as client:
            r = await client.head(f"{origin_of(ctx.url)}/llms.txt")
    except httpx.HTTPError:
        r = None
    if r is not None and r.is_success:
        return passed("Found at /llms.txt")
    return failed("No /llms.txt file. It helps AI assistants understand what the site offers.")


def _json_ld_items(ctx: CheckContext) -> list[dict]:
    items = []
    for script in ctx.soup().find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.get_text())
        except ValueError:
            continue
        for node in data if isinstance(data, list) else [data]:
            if not isinstance(node, dict):
                continue
            graph = node.get("@graph")
            if isinstance(graph, list):
                items.extend(n for n in graph if isinstance(n, dict))
            else:
                items.append(node)
    return items


def _types(item: dict) -> list[str]:
    t = item.get("@type")
    if isinstance(t, list):
        return [str(x) for x in t]
    return [str(t)] if t else []


@register(
    CheckDefinition(
        name="missing_structured_data",
        category=AI,
        priority=CheckPriority.CRITICAL,
        description="Homepage should carry JSON-LD structured data",
        display_name="Missing Structured Data",
        display_name_passed="Structured Data (JSON-LD)",
        learn_more_url="https://developers.google.com/search/docs/appearance/structured-data/intro-structured-data",
        site_wide=True,
    )
)
async def missing_structured_data(ctx: CheckContext) -> CheckOutcome:
    if not ctx.soup().find("script", attrs={"type": "application/ld+json"}):
        return failed(
            "No JSON-LD structured data found. Common types include Organization, Article, Product and FAQPage."
        )
    types = sorted({t for item in _json_ld_items(ctx) for t in _types(item)})
    return passed(f"Found: {', '.join(types)}" if types else "JSON-LD structured data found", types=types)


@register(
    CheckDefinition(
        name="missing_organization_schema",
        category=AI,
        priority=CheckPriority.RECOMMENDED,
        description="Organization schema tells AI systems who runs the site",
        display_name="Missing Organization Schema",
        display_name_passed="Organization Schema",
        learn_more_url="https://developers.google.com/search/docs/appearance/structured-data/organization",
        site_wide=True,
    )
)
async def missing_organization_schema(ctx: CheckContext) -> CheckOutcome:
    for item in _json_ld_items(ctx):
        if not ORGANIZATION_TYPES & set(_types(item)):
            continue
        name = item.get("name") or "Unknown"
        missing = [f for f in ("name", "url", "logo", "description") if not item.get(f)]
        if missing:
            return warning(
                f"Organization schema is missing recommended fields: {', '.join(missing)}.",
                missing_fields=missing,
                organization_name=name,
            )
        return passed(f'Organization schema found for "{name}".', organization_name=name)

    origin = origin_of(ctx.url)
    example = json.dumps(
        {
            "@context": "https://schema.org",
            "@type": "Organization",
            "name": "Your Company Name",
            "url": origin,
            "logo": f"{origin}/logo.png",
            "description": "Brief description of your business",
        },
        indent=2,
    )
    return failed(
        "No Organization schema on the homepage. Add JSON-LD describing your business.",
        suggestion=f'<script type="application/ld+json">\n{example}\n</script>',
    )


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def sitemap_lastmods(xml: str) -> list[datetime]:
    dates = []
    for raw in _LASTMOD.findall(xml):
        try:
            dates.append(_as_utc(datetime.fromisoformat(raw.strip())))
        except ValueError:
            continue
    return dates


@register(
    CheckDefinition(
        name="no_recent_updates",
        category=AI,
        priority=CheckPriority.RECOMMENDED,
        description="Sites without recent updates may be deprioritized",
        display_name="No Recent Updates",
        display_name_passed="Content Freshness",
        learn_more_url="https://developers.google.com/search/docs/fundamentals/creating-helpful-content",
        site_wide=True,
    )
)
async def no_recent_updates(ctx: CheckContext) -> CheckOutcome:
    dates = [_as_utc(p.last_modified) for p in ctx.pages if p.last_modified]
    xml = await _get_text(ctx, f"{origin_of(ctx.url)}/sitemap.xml")
    if xml:
        dates.extend(sitemap_lastmods(xml))

    if not dates:
        return warning(
            "Could not determine content freshness: no Last-Modified headers or sitemap lastmod dates found."
        )

    latest = max(dates)
    now = datetime.now(timezone.utc)
    days = (now - latest).days
    if latest < now - timedelta(days=STALE_AFTER_DAYS):
        return failed(
            f"No content updates in {days} days (threshold: {STALE_AFTER_DAYS} days).",
            daysSinceUpdate=days,
            lastUpdate=latest.isoformat(),
        )
    return passed(f"Content updated {days} day(s) ago", daysSinceUpdate=days, lastUpdate=latest.isoformat())


@register(
    CheckDefinition(
        name="slow_page_response",
        category=AI,
        priority=CheckPriority.CRITICAL,
        description="AI crawlers give up on slow pages",
        display_name="Slow Page Response",
        display_name_passed="Fast Page Response",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/large-site-managing-crawl-budget",
        site_wide=True,
    )
)
async def slow_page_response(ctx: CheckContext) -> CheckOutcome:
    started = time.perf_counter()
    try:
        async with auxiliary_client(ctx, timeout=RESPONSE_TIMEOUT_S) as client:
            await client.get(origin_of(ctx.url))
    except httpx.TimeoutException:
        return failed(f"Homepage took over {RESPONSE_TIMEOUT_S:.0f} seconds to respond.")
    except httpx.HTTPError as e:
        return failed(f"Could not measure response time: {e}")

    elapsed = time.perf_counter() - started
    ms = round(elapsed * 1000)
    if elapsed <= FAST_RESPONSE_S:
        return passed(f"Homepage responds in {elapsed:.2f}s.", response_time_ms=ms)
    if elapsed <= SLOW_RESPONSE_S:
        return warning(
            f"Homepage responds in {elapsed:.2f}s. AI crawlers prefer responses under {FAST_RESPONSE_S:.0f}s.",
            response_time_ms=ms,
        )
    return failed(
        f"Homepage takes {elapsed:.2f}s to respond. Many crawlers time out at {SLOW_RESPONSE_S:.0f}s.",
        response_time_ms=ms,
    )


@register(
    CheckDefinition(
        name="missing_markdown",
        category=AI,
        priority=CheckPriority.OPTIONAL,
        description="Markdown versions of pages are easier for AI crawlers to read",
        display_name="Missing Markdown Alternatives",
        display_name_passed="Markdown Alternatives",
        learn_more_url="https://llmstxt.org/",
        site_wide=True,
    )
)
async def missing_markdown(ctx: CheckContext) -> CheckOutcome:
    origin = origin_of(ctx.url)
    found = []
    async with auxiliary_client(ctx) as client:
        for path in MARKDOWN_PATHS:
            try:
                r = await client.head(origin + path)
            except httpx.HTTPError:
                continue
            if r.is_success:
                found.append(path)

        for page in ctx.html_pages()[:10]:
            md_url = page.url.rstrip("/") + ".md"
            try:
                r = await client.head(md_url)
            except httpx.HTTPError:
                continue
            content_type = r.headers.get("content-type", "")
            if r.is_success and any(t in content_type for t in MARKDOWN_CONTENT_TYPES):
                found.append(md_url)

    if not found:
        return failed("No markdown alternatives found. Provide /llms-full.txt or .md versions of key pages.")
    return passed(f"Found {len(found)} markdown endpoint(s): {', '.join(found[:3])}", endpoints=found)
