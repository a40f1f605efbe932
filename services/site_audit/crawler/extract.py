import re
from urllib.parse import urljoin, urldefrag, urlparse

from bs4 import BeautifulSoup

_SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")


def normalize_url(url: str) -> str:
    u, _ = urldefrag(url.strip())
    if u.endswith("/"):
        u = u[:-1]
    return u


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc}"


def is_homepage(url: str) -> bool:
    return urlparse(url).path in ("", "/")


def _host_variants(hostname: str) -> set[str]:
    if hostname.startswith("www."):
        return {hostname, hostname[4:]}
    return {hostname, f"www.{hostname}"}


def _resolve(base: str, href: str) -> str | None:
    if not href:
        return None
    href = href.strip()
    if href.lower().startswith(_SKIPPED_SCHEMES):
        return None
    u = urljoin(base, href)
    p = urlparse(u)
    if p.scheme not in ("http", "https") or not p.hostname:
        return None
    return u


def extract_links(html: str, base_url: str, final_url: str | None = None) -> list[str]:
    """Return same-site absolute links found in ``<a href>`` attributes.

    Relative links resolve against the post-redirect URL. A link is kept when
    its hostname matches the requested or the final hostname, including the
    ``www.``/bare variant of either. Results are normalized and deduplicated in
    document order.
    """
    resolve_base = final_url or base_url
    valid_hosts = _host_variants(urlparse(base_url).hostname or "")
    valid_hosts |= _host_variants(urlparse(resolve_base).hostname or "")

    soup = BeautifulSoup(html, "lxml")
    seen: set[str] = set()
    links: list[str] = []
    for a in soup.find_all("a", href=True):
        u = _resolve(resolve_base, a.get("href"))
        if u is None or urlparse(u).hostname not in valid_hosts:
            continue
        nu = normalize_url(u)
        if nu not in seen:
            seen.add(nu)
            links.append(nu)
    return links


def extract_title(html: str) -> str | None:
    soup = BeautifulSoup(html, "lxml")
    if soup.title is None:
        return None
    return soup.title.get_text(strip=True) or None


def extract_meta_description(html: str) -> str | None:
    soup = BeautifulSoup(html, "lxml")
    m = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    if m and m.get("content"):
        return m["content"].strip() or None
    return None
