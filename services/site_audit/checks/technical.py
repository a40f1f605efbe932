import asyncio
import re
import ssl
import time
from collections import Counter
from urllib.parse import urlparse

from services.site_audit.checks.base import CheckContext, CheckDefinition, CheckOutcome, failed, passed, register, warning
from services.site_audit.config import settings
from services.site_audit.enums import CheckCategory, CheckPriority

TECHNICAL = CheckCategory.TECHNICAL

CERT_EXPIRY_WARNING_DAYS = 30

_INSECURE_SOURCES = (
    ("img", "src", "image"),
    ("script", "src", "script"),
    ("link", "href", "stylesheet"),
    ("iframe", "src", "iframe"),
    ("video", "src", "video"),
    ("audio", "src", "audio"),
    ("source", "src", "media source"),
    ("object", "data", "object"),
    ("embed", "src", "embed"),
)
_STYLE_HTTP_URL = re.compile(r"url\s*\(\s*['\"]?(http://[^'\")]+)", re.I)


@register(
    CheckDefinition(
        name="missing_h1",
        category=TECHNICAL,
        priority=CheckPriority.CRITICAL,
        description="Every page should have a main <h1> heading",
        display_name="Missing H1 Heading",
        display_name_passed="H1 Heading",
        learn_more_url="https://developer.mozilla.org/en-US/docs/Web/HTML/Element/Heading_Elements",
        fix_guidance="Add a single <h1> that states what the page is about.",
    )
)
async def missing_h1(ctx: CheckContext) -> CheckOutcome:
    for h1 in ctx.soup().find_all("h1"):
        text = h1.get_text(" ", strip=True)
        if text:
            return passed(text[:100], h1=text)
    return failed("Page has no <h1> heading.")


@register(
    CheckDefinition(
        name="multiple_h1",
        category=TECHNICAL,
        priority=CheckPriority.RECOMMENDED,
        description="Pages should have exactly one <h1>",
        display_name="Multiple H1 Headings",
        display_name_passed="Single H1 Heading",
        learn_more_url="https://developer.mozilla.org/en-US/docs/Web/HTML/Element/Heading_Elements#avoid_using_multiple_h1_elements_on_one_page",
    )
)
async def multiple_h1(ctx: CheckContext) -> CheckOutcome:
    count = len(ctx.soup().find_all("h1"))
    if count > 1:
        return warning(f"Page has {count} <h1> headings. Keep one main heading and demote the rest.", count=count)
    return passed(count=count)


@register(
    CheckDefinition(
        name="missing_viewport",
        category=TECHNICAL,
        priority=CheckPriority.RECOMMENDED,
        description="Pages need a viewport meta tag to render on mobile",
        display_name="Missing Viewport Meta Tag",
        display_name_passed="Viewport Meta Tag",
        learn_more_url="https://developers.google.com/search/docs/crawling-indexing/mobile/mobile-sites-mobile-first-indexing",
    )
)
async def missing_viewport(ctx: CheckContext) -> CheckOutcome:
    m = ctx.soup().find("meta", attrs={"name": re.compile(r"^viewport$", re.I)})
    content = (m.get("content") or "").strip() if m else ""
    if not content:
        return warning(
            'Add <meta name="viewport" content="width=device-width, initial-scale=1"> to the <head> '
            "so the page renders correctly on mobile devices."
        )
    return passed(content)


@register(
    CheckDefinition(
        name="mixed_content",
        category=TECHNICAL,
        priority=CheckPriority.RECOMMENDED,
        description="HTTP resources on HTTPS pages cause security warnings",
        display_name="Mixed Content",
        display_name_passed="Secure Resources",
        learn_more_url="https://web.dev/articles/what-is-mixed-content",
    )
)
async def mixed_content(ctx: CheckContext) -> CheckOutcome:
    if urlparse(ctx.url).scheme != "https":
        return passed("Page is served over HTTP, mixed content does not apply")

    soup = ctx.soup()
    insecure = []
    for tag, attr, kind in _INSECURE_SOURCES:
        for el in soup.find_all(tag, attrs={attr: True}):
            if el[attr].strip().lower().startswith("http://"):
                insecure.append({"type": kind, "url": el[attr].strip()})
    for el in soup.find_all(style=True):
        for u in _STYLE_HTTP_URL.findall(el["style"]):
            insecure.append({"type": "inline style", "url": u})

    if not insecure:
        return passed("All resources load over HTTPS")

    counts = Counter(r["type"] for r in insecure)
    summary = ", ".join(f"{n} {kind}" for kind, n in counts.items())
    return failed(
        f"{len(insecure)} insecure HTTP resource(s) on an HTTPS page ({summary}). Switch them to HTTPS.",
        count=len(insecure),
        resources=insecure[:5],
    )


def _issuer(cert: dict) -> str:
    fields = {k: v for rdn in cert.get("issuer", ()) for k, v in rdn}
    return fields.get("organizationName") or fields.get("commonName") or "Unknown"


async def fetch_certificate(hostname: str, port: int = 443) -> dict:
    """Open a verified TLS connection and return the peer certificate.

    Raises ``ssl.SSLCertVerificationError`` when the chain does not verify and
    ``OSError``/``TimeoutError`` when the host cannot be reached.
    """
    context = ssl.create_default_context()
    _, writer = await asyncio.wait_for(
        asyncio.open_connection(hostname, port, ssl=context, server_hostname=hostname),
        timeout=settings.aux_timeout_s,
    )
    try:
        return writer.get_extra_info("peercert") or {}
    finally:
        writer.close()


@register(
    CheckDefinition(
        name="invalid_ssl_certificate",
        category=TECHNICAL,
        priority=CheckPriority.CRITICAL,
        description="SSL certificate is invalid, expired, or has issues",
        display_name="Invalid SSL Certificate",
        display_name_passed="Valid SSL Certificate",
        learn_more_url="https://developers.google.com/search/docs/fundamentals/security",
        site_wide=True,
    )
)
async def invalid_ssl_certificate(ctx: CheckContext) -> CheckOutcome:
    p = urlparse(ctx.url)
    if p.scheme != "https":
        return passed("Site uses HTTP, certificate check not applicable")

    try:
        cert = await fetch_certificate(p.hostname, p.port or 443)
    except ssl.SSLCertVerificationError as e:
        reason = getattr(e, "verify_message", None) or str(e)
        return failed(f"SSL certificate validation failed: {reason}. Browsers will show security warnings.", error=reason)
    except (ssl.SSLError, OSError, asyncio.TimeoutError) as e:
        reason = str(e) or e.__class__.__name__
        return failed(f"Unable to verify SSL certificate: {reason}", error=reason)

    if "notAfter" not in cert:
        return failed("Unable to verify SSL certificate: no certificate returned", error="no certificate")

    expires = ssl.cert_time_to_seconds(cert["notAfter"])
    days = int((expires - time.time()) // 86400)
    expires_on = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(expires))
    issuer = _issuer(cert)

    if days <= 0:
        return failed(f"SSL certificate expired on {expires_on[:10]}.", expiredOn=expires_on, issuer=issuer)
    if days <= CERT_EXPIRY_WARNING_DAYS:
        return warning(
            f"SSL certificate expires in {days} days ({expires_on[:10]}). Renew it soon.",
            daysUntilExpiry=days,
            expiresOn=expires_on,
            issuer=issuer,
        )
    return passed(
        f"SSL certificate is valid and expires in {days} days",
        issuer=issuer,
        expiresOn=expires_on,
        daysUntilExpiry=days,
    )
