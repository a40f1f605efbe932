import re
from collections import defaultdict
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

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
from services.site_audit.crawler.extract import extract_meta_description, normalize_url, origin_of
from services.site_audit.enums import CheckCategory, CheckPriority

SEO = CheckCategory.SEO
CRITICAL = CheckPriority.CRITICAL
RECOMMENDED = CheckPriority.RECOMMENDED
OPTIONAL = CheckPriority.OPTIONAL

TITLE_MIN, TITLE_MAX = 30, 60
META_DESCRIPTION_MIN, META_DESCRIPTION_MAX = 120, 160
MAX_IMAGE_BYTES = 500 * 1024
MAX_IMAGES_CHECKED = 25
MAX_REDIRECT_SAMPLES = 20
MAX_REDIRECT_HOPS = 10
MAX_DUPLICATE_GROUPS = 10
MAX_URLS_PER_GROUP = 5
SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemap/sitemap.xml")

_STOP_WORDS = frozenset(
    "a an the and or but in on at to for of with by is are was were be been being have has had do does did "
    "will would could should may might must can this that these those i you he she it we they what which who "
    "when where why how all each every both few more most other some such no not only own same so than too "
    "very just also".split()
)
_ID_PATTERNS = (
    re.compile(r"^[0-9]+$"),
    re.compile(r"^[a-f0-9]{8,}$", re.I),
    re.compile(r"^[a-z0-9]{20,}$", re.I),
    re.compile(r"^\d{4}-\d{2}-\d{2}$"),
)


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


# page checks


@register(
    CheckDefinition(
        name="missing_title",
        category=SEO,
        priority=CRITICAL,
        description="Every page needs a <title> element",
        display_name="Missing Page Title",
        display_name_passed="Page Title",
        learn_more_url="https://developers.google.com/search/docs/appearance/title-link",
        fix_guidance="Add a unique, descriptive <title> inside the page <head>.",
    )
)
async def missing_title(ctx: CheckContext) -> CheckOutcome:
    title = (ctx.title or "").strip()
    if not title:
        return failed("Page has no <title>. Search engines and AI assistants use it as the page headline.")
    return passed(_preview(title), title=title)


@register(
    CheckDefinition(
        name="title_length",
        category=SEO,
        priority=RECOMMENDED,
        description=f"Title should be between {TITLE_MIN} and {TITLE_MAX} characters",
        display_name="Title Length",
        display_name_passed="Title Length",
        learn_more_url="https://developers.google.com/search/docs/appearance/title-link",
    )
)
async def title_length(ctx: CheckContext) -> CheckOutcome:
    title = (ctx.title or "").strip()
    if not title:
        return passed()
    n = len(title)
    if n < TITLE_MIN or n > TITLE_MAX:
        return warning(f"Title is {n} characters (recommended: {TITLE_MIN}-{TITLE_MAX})", length=n)
    return passed(f"Title is {n} characters", length=n)


@register(
    CheckDefinition(
        name="missing_meta_description",
        category=SEO,
        priority=CRITICAL,
        description="Every page needs a meta description",
        display_name="Missing Meta Description",
        display_name_passed="Meta Description",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
        fix_guidance='Add <meta name="description" content="..."> summarising the page in one or two sentences.',
    )
)
async def missing_meta_description(ctx: CheckContext) -> CheckOutcome:
    description = extract_meta_description(ctx.html)
    if not description:
        return failed("Page has no meta description. Search results will show an auto-generated snippet instead.")
    return passed(_preview(description), description=description)


@register(
    CheckDefinition(
        name="meta_description_length",
        category=SEO,
        priority=RECOMMENDED,
        description=f"Meta description should be between {META_DESCRIPTION_MIN} and {META_DESCRIPTION_MAX} characters",
        display_name="Meta Description Length",
        display_name_passed="Meta Description Length",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
    )
)
async def meta_description_length(ctx: CheckContext) -> CheckOutcome:
    description = extract_meta_description(ctx.html)
    if not description:
        return passed()
    n = len(description)
    if n < META_DESCRIPTION_MIN or n > META_DESCRIPTION_MAX:
        return warning(
            f"Meta description is {n} characters (recommended: {META_DESCRIPTION_MIN}-{META_DESCRIPTION_MAX})",
            length=n,
        )
    return passed(f"Meta description is {n} characters", length=n)


@register(
    CheckDefinition(
        name="heading_hierarchy",
        category=SEO,
        priority=RECOMMENDED,
        description="Heading levels should not be skipped",
        display_name="Skipped Heading Levels",
        display_name_passed="Heading Hierarchy",
        learn_more_url="https://developer.mozilla.org/en-US/docs/Web/HTML/Element/Heading_Elements#usage_notes",
    )
)
async def heading_hierarchy(ctx: CheckContext) -> CheckOutcome:
    levels = [int(h.name[1]) for h in ctx.soup().find_all(["h1", "h2", "h3", "h4", "h5", "h6"])]
    if not levels:
        return passed()

    skipped = []
    prev = 0
    for level in levels:
        if prev and level > prev + 1:
            skipped.append(f"H{prev} → H{level}")
        prev = level

    if skipped:
        return warning(
            f"Headings skip levels: {', '.join(skipped)}. Keep a logical H1 → H2 → H3 order so readers "
            "and crawlers can follow the structure.",
            skippedLevels=skipped,
        )
    return passed("Headings follow correct hierarchy")


@register(
    CheckDefinition(
        name="canonical_validation",
        category=SEO,
        priority=RECOMMENDED,
        description="Canonical URLs should be valid, accessible, and self-referencing on unique pages",
        display_name="Invalid Canonical URL",
        display_name_passed="Valid Canonical URLs",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/consolidate-duplicate-urls",
    )
)
async def canonical_validation(ctx: CheckContext) -> CheckOutcome:
    soup = ctx.soup()
    link = soup.find("link", rel="canonical")
    href = (link.get("href") or "").strip() if link else ""
    if not href:
        return passed("No canonical tag")

    canonical = urljoin(ctx.url, href)
    p = urlparse(canonical)
    if p.scheme not in ("http", "https") or not p.netloc:
        return failed(f'Canonical URL is malformed: "{href}". Use an absolute URL.', canonical=href)

    try:
        async with auxiliary_client(ctx, follow_redirects=False) as client:
            head = await client.head(canonical)
            if head.status_code >= 400:
                return failed(
                    f"Canonical URL returns {head.status_code}. It must point to an accessible page.",
                    canonical=canonical,
                    status=head.status_code,
                )
            if 300 <= head.status_code < 400:
                return warning(
                    f"Canonical URL redirects ({head.status_code}). Point it at the final URL instead.",
                    canonical=canonical,
                    status=head.status_code,
                )
            target = await client.get(canonical)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return failed(
            f"Could not verify canonical URL ({canonical}). Ensure it is accessible.",
            canonical=canonical,
            error=str(e) or e.__class__.__name__,
        )

    target_link = BeautifulSoup(target.text, "lxml").find("link", rel="canonical")
    target_href = (target_link.get("href") or "").strip() if target_link else ""
    if target_href:
        target_canonical = urljoin(canonical, target_href)
        if normalize_url(target_canonical) != normalize_url(canonical):
            return failed(
                f"Canonical chain: this page points to {canonical}, which points to {target_canonical}.",
                canonical=canonical,
                targetCanonical=target_canonical,
            )

    if normalize_url(canonical) != normalize_url(ctx.url):
        return warning(
            f"Canonical points to a different URL: {canonical}. Make sure this page is an intentional duplicate.",
            canonical=canonical,
        )
    return passed(f"Canonical URL is valid and accessible: {canonical}", canonical=canonical)


@register(
    CheckDefinition(
        name="noindex_on_important_pages",
        category=SEO,
        priority=CRITICAL,
        description="Important pages should not carry a noindex directive",
        display_name="Noindex Tag on Important Pages",
        display_name_passed="No Noindex Issues",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/block-indexing",
    )
)
async def noindex_on_important_pages(ctx: CheckContext) -> CheckOutcome:
    soup = ctx.soup()
    directive = None
    for name in ("robots", "googlebot"):
        m = soup.find("meta", attrs={"name": re.compile(rf"^{name}$", re.I)})
        content = (m.get("content") or "").lower() if m else ""
        if "noindex" in content:
            directive = content
            break

    if directive is None:
        return passed("No noindex directives found on this page")

    path = urlparse(ctx.url).path
    if len([s for s in path.split("/") if s]) <= 1:
        return failed(
            f"This important page has a noindex directive ({directive}) and will be dropped from search results.",
            metaContent=directive,
            path=path,
        )
    return warning(f"Page has a noindex directive ({directive}). Verify this is intentional.", metaContent=directive)


def _words(text: str) -> list[str]:
    text = re.sub(r"[^a-z0-9\s-]", " ", text.lower())
    return [w for w in re.split(r"[\s-]+", text) if len(w) > 2 and w not in _STOP_WORDS]


@register(
    CheckDefinition(
        name="non_descriptive_url",
        category=SEO,
        priority=RECOMMENDED,
        description="URL slugs should be descriptive and relate to page content",
        display_name="Non-Descriptive URL",
        display_name_passed="Descriptive URL",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/url-structure",
    )
)
async def non_descriptive_url(ctx: CheckContext) -> CheckOutcome:
    segments = [re.sub(r"\.[^.]+$", "", s) for s in urlparse(ctx.url).path.split("/") if s]
    if not segments:
        return passed("Homepage, no URL slug to check")

    slug = segments[-1]
    if any(p.match(slug) for p in _ID_PATTERNS):
        return failed(
            f'URL uses an ID-like slug "{slug}". Prefer readable paths such as /services/web-design.',
            slug=slug,
        )

    issues = []
    slug_words = _words(slug.replace("-", " "))
    if not slug_words:
        issues.append(f'Slug "{slug}" contains no meaningful keywords')
    if "_" in slug:
        issues.append("URL uses underscores; search engines treat hyphens as word separators")
    if slug != slug.lower():
        issues.append("URL contains uppercase characters")
    path = "/" + "/".join(segments)
    if len(path) > 75:
        issues.append(f"URL path is {len(path)} characters long")
    if ctx.title and len(slug_words) >= 2:
        title_words = _words(ctx.title)
        if title_words and not set(slug_words) & set(title_words):
            issues.append("URL slug words do not appear in the page title")

    if issues:
        return warning(". ".join(issues), slug=slug, path=path)
    return passed(f'URL "{slug}" is descriptive and well-formatted')


@register(
    CheckDefinition(
        name="oversized_images",
        category=SEO,
        priority=OPTIONAL,
        description="Images over 500KB slow down page load",
        display_name="Oversized Images",
        display_name_passed="Image Sizes",
        learn_more_url="https://web.dev/articles/optimize-cls#images_without_dimensions",
    )
)
async def oversized_images(ctx: CheckContext) -> CheckOutcome:
    sources = []
    for img in ctx.soup().find_all("img", src=True):
        src = urljoin(ctx.url, img["src"].strip())
        if urlparse(src).scheme in ("http", "https") and src not in sources:
            sources.append(src)

    checked = 0
    oversized = []
    async with auxiliary_client(ctx) as client:
        for src in sources[:MAX_IMAGES_CHECKED]:
            try:
                r = await client.head(src)
            except httpx.HTTPError:
                continue
            length = r.headers.get("content-length")
            if not r.is_success or not length or not length.isdigit():
                continue
            checked += 1
            if int(length) > MAX_IMAGE_BYTES:
                oversized.append({"src": src, "sizeKb": round(int(length) / 1024)})

    if oversized:
        largest = max(oversized, key=lambda i: i["sizeKb"])
        return failed(
            f"{len(oversized)} image(s) over {MAX_IMAGE_BYTES // 1024}KB, largest {largest['sizeKb']}KB. "
            "Compress them or serve WebP/AVIF.",
            count=len(oversized),
            images=oversized[:5],
        )
    if checked:
        return passed(f"All {checked} images are under {MAX_IMAGE_BYTES // 1024}KB")
    return passed("No images found to check")


# site-wide checks


def _duplicate_groups(pairs: list[tuple[str, str]]) -> list[dict]:
    groups: dict[str, list[str]] = defaultdict(list)
    for value, url in pairs:
        groups[value].append(url)
    dupes = [{"value": v, "urls": urls, "count": len(urls)} for v, urls in groups.items() if len(urls) > 1]
    dupes.sort(key=lambda d: d["count"], reverse=True)
    return dupes


def _duplicate_details(dupes: list[dict], key: str) -> dict:
    return {
        "duplicateCount": len(dupes),
        "affectedPages": sum(d["count"] for d in dupes),
        "duplicates": [
            {key: d["value"], "urls": d["urls"][:MAX_URLS_PER_GROUP], "count": d["count"]}
            for d in dupes[:MAX_DUPLICATE_GROUPS]
        ],
    }


def _examples(dupes: list[dict], width: int) -> str:
    return ", ".join(f'"{d["value"][:width]}" ({d["count"]} pages)' for d in dupes[:3])


@register(
    CheckDefinition(
        name="duplicate_titles",
        category=SEO,
        priority=CRITICAL,
        description="Duplicate page titles confuse search engines and reduce click-through rates",
        display_name="Duplicate Page Titles",
        display_name_passed="Unique Page Titles",
        learn_more_url="https://developers.google.com/search/docs/appearance/title-link",
        site_wide=True,
    )
)
async def duplicate_titles(ctx: CheckContext) -> CheckOutcome:
    pairs = [(p.title.strip(), p.url) for p in ctx.html_pages() if p.title and p.title.strip()]
    dupes = _duplicate_groups(pairs)
    if not dupes:
        return passed("All page titles are unique", uniqueTitles=len({t for t, _ in pairs}))
    details = _duplicate_details(dupes, "title")
    return failed(
        f"Found {len(dupes)} duplicated title(s) across {details['affectedPages']} pages, e.g. {_examples(dupes, 40)}. "
        "Give every page its own title.",
        **details,
    )


@register(
    CheckDefinition(
        name="duplicate_meta_descriptions",
        category=SEO,
        priority=RECOMMENDED,
        description="Duplicate meta descriptions reduce click-through rates from search results",
        display_name="Duplicate Meta Descriptions",
        display_name_passed="Unique Meta Descriptions",
        learn_more_url="https://developers.google.com/search/docs/appearance/snippet",
        site_wide=True,
    )
)
async def duplicate_meta_descriptions(ctx: CheckContext) -> CheckOutcome:
    pairs = [
        (p.meta_description.strip(), p.url)
        for p in ctx.html_pages()
        if p.meta_description and p.meta_description.strip()
    ]
    dupes = _duplicate_groups(pairs)
    if not dupes:
        return passed("All meta descriptions are unique", uniqueDescriptions=len({d for d, _ in pairs}))
    details = _duplicate_details(dupes, "description")
    return warning(
        f"Found {len(dupes)} duplicated meta description(s) across {details['affectedPages']} pages, "
        f"e.g. {_examples(dupes, 50)}.",
        **details,
    )


@register(
    CheckDefinition(
        name="broken_internal_links",
        category=SEO,
        priority=CRITICAL,
        description="Internal links returning 4xx/5xx errors hurt SEO and user experience",
        display_name="Broken Internal Links",
        display_name_passed="Internal Links",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/http-network-errors",
        site_wide=True,
    )
)
async def broken_internal_links(ctx: CheckContext) -> CheckOutcome:
    broken = [p for p in ctx.pages if (p.status_code or 200) >= 400]
    if not broken:
        return passed(
            f"All {len(ctx.pages)} internal pages returned successful status codes",
            totalPages=len(ctx.pages),
        )

    by_status: dict[str, list[str]] = defaultdict(list)
    for p in broken:
        by_status[str(p.status_code)].append(p.url)
    summary = ", ".join(f"{code}: {len(urls)}" for code, urls in by_status.items())
    return failed(
        f"Found {len(broken)} broken internal link(s) ({summary}). Fix or remove them.",
        brokenCount=len(broken),
        brokenUrls=[{"url": p.url, "status": p.status_code} for p in broken[:10]],
        byStatus=dict(by_status),
    )


async def _follow_redirects(client: httpx.AsyncClient, start: str) -> list[str]:
    chain = [start]
    current = start
    for _ in range(MAX_REDIRECT_HOPS):
        try:
            r = await client.head(current)
        except httpx.HTTPError:
            break
        location = r.headers.get("location")
        if not r.is_redirect or not location:
            break
        nxt = urljoin(current, location)
        chain.append(nxt)
        if nxt in chain[:-1]:
            break
        current = nxt
    return chain


@register(
    CheckDefinition(
        name="redirect_chains",
        category=SEO,
        priority=RECOMMENDED,
        description="Redirects should go directly to the final URL",
        display_name="Redirect Chains Detected",
        display_name_passed="No Redirect Chains",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/301-redirects",
        site_wide=True,
    )
)
async def redirect_chains(ctx: CheckContext) -> CheckOutcome:
    redirects = [p for p in ctx.pages if 300 <= (p.status_code or 200) < 400][:MAX_REDIRECT_SAMPLES]
    if not redirects:
        return passed("No redirects found in crawled pages")

    chains = []
    async with auxiliary_client(ctx, follow_redirects=False) as client:
        for p in redirects:
            chain = await _follow_redirects(client, p.url)
            if len(chain) > 2:
                chains.append({"startUrl": p.url, "hops": len(chain) - 1, "chain": chain})

    if not chains:
        return passed(f"Checked {len(redirects)} redirect(s), no chains detected", redirectsChecked=len(redirects))

    chains.sort(key=lambda c: c["hops"], reverse=True)
    max_hops = chains[0]["hops"]
    examples = ", ".join(f"{c['startUrl']} ({c['hops']} hops)" for c in chains[:3])
    outcome = failed if max_hops >= 3 else warning
    return outcome(
        f"Found {len(chains)} redirect chain(s) with up to {max_hops} hops, e.g. {examples}. "
        "Link straight to the final URL.",
        chainCount=len(chains),
        maxHops=max_hops,
        longestChains=chains[:5],
    )


@register(
    CheckDefinition(
        name="missing_robots_txt",
        category=SEO,
        priority=CRITICAL,
        description="robots.txt tells search engines how to crawl the site",
        display_name="Missing robots.txt",
        display_name_passed="robots.txt",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/robots/intro",
        site_wide=True,
    )
)
async def missing_robots_txt(ctx: CheckContext) -> CheckOutcome:
    robots_url = f"{origin_of(ctx.url)}/robots.txt"
    try:
        async with auxiliary_client(ctx) as client:
            r = await client.get(robots_url)
    except httpx.HTTPError:
        return failed("Could not reach robots.txt (connection error). Make sure the file is accessible.")

    if not r.is_success:
        return failed(
            f"No robots.txt found (HTTP {r.status_code}). Add one to steer crawlers and point at your sitemap.",
            statusCode=r.status_code,
        )

    text = r.text
    if not re.search(r"^User-agent:", text, re.I | re.M):
        return warning("robots.txt exists but has no User-agent directives.", url=robots_url)

    has_sitemap = bool(re.search(r"^Sitemap:", text, re.I | re.M))
    has_rules = bool(re.search(r"^(Dis)?allow:", text, re.I | re.M))
    return passed("robots.txt is properly configured", url=robots_url, hasSitemap=has_sitemap, hasCrawlRules=has_rules)


@register(
    CheckDefinition(
        name="missing_sitemap",
        category=SEO,
        priority=CRITICAL,
        description="An XML sitemap helps search engines discover pages",
        display_name="Missing XML Sitemap",
        display_name_passed="XML Sitemap",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/sitemaps/overview",
        site_wide=True,
    )
)
async def missing_sitemap(ctx: CheckContext) -> CheckOutcome:
    base = origin_of(ctx.url)
    async with auxiliary_client(ctx) as client:
        for path in SITEMAP_PATHS:
            try:
                r = await client.head(base + path)
            except httpx.HTTPError:
                continue
            if r.is_success:
                return passed(f"XML sitemap found at {base + path}", sitemap_url=base + path)

        try:
            robots = await client.get(f"{base}/robots.txt")
        except httpx.HTTPError:
            robots = None

        if robots is not None and robots.is_success:
            m = re.search(r"^Sitemap:\s*(.+)$", robots.text, re.I | re.M)
            if m:
                declared = m.group(1).strip()
                try:
                    r = await client.head(declared)
                except (httpx.HTTPError, httpx.InvalidURL):
                    return warning(f"Sitemap declared in robots.txt ({declared}) is not accessible")
                if r.is_success:
                    return passed(f"XML sitemap found at {declared}", sitemap_url=declared)

    return failed("No XML sitemap found. Publish a sitemap.xml listing the important pages.")


@register(
    CheckDefinition(
        name="http_to_https_redirect",
        category=SEO,
        priority=CRITICAL,
        description="The HTTP version of the site should redirect to HTTPS",
        display_name="Missing HTTP to HTTPS Redirect",
        display_name_passed="HTTP to HTTPS Redirect",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/consolidate-duplicate-urls",
        site_wide=True,
    )
)
async def http_to_https_redirect(ctx: CheckContext) -> CheckOutcome:
    if urlparse(ctx.url).scheme != "https":
        return passed("Site is served over HTTP, the certificate check covers this")

    http_url = "http://" + ctx.url[len("https://"):]
    try:
        async with auxiliary_client(ctx, follow_redirects=False) as client:
            r = await client.head(http_url)
    except httpx.HTTPError:
        return passed("HTTP version is not reachable")

    location = r.headers.get("location")
    if r.is_redirect and location:
        if urlparse(urljoin(http_url, location)).scheme == "https":
            return passed(
                f"HTTP redirects to HTTPS ({r.status_code})",
                redirectStatus=r.status_code,
                redirectLocation=location,
            )
        return warning(
            f"HTTP redirects, but not to HTTPS. Location: {location}",
            redirectStatus=r.status_code,
            redirectLocation=location,
        )
    return failed(
        f"HTTP version answers {r.status_code} without redirecting to HTTPS. Add a 301 redirect.",
        httpStatus=r.status_code,
    )
