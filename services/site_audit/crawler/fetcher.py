import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from config.logging_config import get_logger
from services.site_audit.config import settings
from services.site_audit.errors import TransportError

logger = get_logger(__name__)


@dataclass
class FetchResult:
    url: str
    html: str
    status_code: int | None
    last_modified: datetime | None
    final_url: str | None
    used_relaxed_tls: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, url: str, error: str) -> "FetchResult":
        return cls(url=url, html="", status_code=None, last_modified=None, final_url=None, error=error)


def parse_last_modified(header: str | None) -> datetime | None:
    if not header:
        return None
    try:
        dt = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def is_tls_error(exc: BaseException | None) -> bool:
    while exc is not None:
        if isinstance(exc, ssl.SSLError):
            return True
        s = str(exc).lower()
        if "certificate" in s or "ssl" in s or "tls" in s:
            return True
        exc = exc.__cause__ or exc.__context__
    return False


async def _get(url: str, verify: bool) -> FetchResult:
    headers = {"User-Agent": settings.user_agent}
    try:
        async with httpx.AsyncClient(follow_redirects=True, headers=headers, timeout=settings.fetch_timeout_s, verify=verify) as client:
            r = await client.get(url)
    except httpx.HTTPError as e:
        raise TransportError(url, str(e) or e.__class__.__name__) from e
    return FetchResult(
        url=url,
        html=r.text,
        status_code=r.status_code,
        last_modified=parse_last_modified(r.headers.get("last-modified")),
        final_url=str(r.url),
    )


async def fetch_page(url: str, relaxed_tls: bool = False) -> FetchResult:
    """GET ``url`` following redirects.

    Non-2xx responses are returned as-is. Transport failures come back with
    ``error`` set and an empty body. When certificate verification fails the
    request is retried once without verification and the result is flagged
    with ``used_relaxed_tls`` so the caller can keep that mode for the audit.
    """
    try:
        return await _get(url, verify=not relaxed_tls)
    except TransportError as e:
        if relaxed_tls or not is_tls_error(e.__cause__):
            return FetchResult.failed(url, e.reason)
        logger.warning("TLS verification failed, retrying with relaxed verification", extra={"url": url, "error": e.reason})

    try:
        result = await _get(url, verify=False)
    except TransportError as e:
        return FetchResult.failed(url, e.reason)
    result.used_relaxed_tls = True
    return result
