import httpx
import pytest
import respx

from services.site_audit.checks import seo
from services.site_audit.checks.base import CheckContext, PageSnapshot
from services.site_audit.enums import CheckStatus


def page(html, url="https://x.test/", **kwargs):
    return CheckContext(url=url, html=html, **kwargs)


@pytest.mark.asyncio
async def test_missing_title():
    r = await seo.missing_title(page("<html><head><title> </title></head></html>", title=None))
    assert r.status == CheckStatus.FAILED
    r = await seo.missing_title(page("<html><head><title>Home</title></head></html>", title="Home"))
    assert r.status == CheckStatus.PASSED
    assert r.details["title"] == "Home"


@pytest.mark.asyncio
async def test_title_length_bounds():
    assert (await seo.title_length(page("", title="Short"))).status == CheckStatus.WARNING
    assert (await seo.title_length(page("", title="x" * 45))).status == CheckStatus.PASSED
    assert (await seo.title_length(page("", title="x" * 61))).status == CheckStatus.WARNING
    assert (await seo.title_length(page("", title=None))).status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_meta_description_checks():
    html = '<html><head><meta name="description" content="%s"></head></html>'
    r = await seo.missing_meta_description(page("<html><head></head></html>"))
    assert r.status == CheckStatus.FAILED
    r = await seo.meta_description_length(page(html % ("d" * 80)))
    assert r.status == CheckStatus.WARNING
    assert r.details["length"] == 80
    r = await seo.meta_description_length(page(html % ("d" * 140)))
    assert r.status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_heading_hierarchy_lists_skips():
    r = await seo.heading_hierarchy(page("<h1>a</h1><h3>b</h3><h2>c</h2><h5>d</h5>"))
    assert r.status == CheckStatus.WARNING
    assert r.details["skippedLevels"] == ["H1 → H3", "H2 → H5"]
    r = await seo.heading_hierarchy(page("<h1>a</h1><h2>b</h2><h3>c</h3><h2>d</h2>"))
    assert r.status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_noindex_on_important_pages():
    html = '<meta name="robots" content="noindex, follow">'
    assert (await seo.noindex_on_important_pages(page(html))).status == CheckStatus.FAILED
    deep = page(html, url="https://x.test/blog/2020/post")
    assert (await seo.noindex_on_important_pages(deep)).status == CheckStatus.WARNING
    assert (await seo.noindex_on_important_pages(page("<p>hi</p>"))).status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_non_descriptive_url():
    r = await seo.non_descriptive_url(page("", url="https://x.test/products/12345"))
    assert r.status == CheckStatus.FAILED
    r = await seo.non_descriptive_url(page("", url="https://x.test/web-design-services", title="Web Design Services"))
    assert r.status == CheckStatus.PASSED
    r = await seo.non_descriptive_url(page("", url="https://x.test/"))
    assert r.status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_canonical_pointing_to_missing_page():
    html = '<link rel="canonical" href="https://x.test/gone">'
    with respx.mock(assert_all_called=False) as router:
        router.head("https://x.test/gone").respond(404)
        r = await seo.canonical_validation(page(html))
    assert r.status == CheckStatus.FAILED
    assert r.details["status"] == 404


@pytest.mark.asyncio
async def test_canonical_self_reference_passes():
    html = '<link rel="canonical" href="https://x.test/about">'
    with respx.mock(assert_all_called=False) as router:
        router.head("https://x.test/about").respond(200)
        router.get("https://x.test/about").respond(200, html=html)
        r = await seo.canonical_validation(page(html, url="https://x.test/about"))
    assert r.status == CheckStatus.PASSED


@pytest.mark.asyncio
async def test_canonical_unreachable():
    html = '<link rel="canonical" href="https://x.test/about">'
    with respx.mock(assert_all_called=False) as router:
        router.head("https://x.test/about").mock(side_effect=httpx.ConnectError("refused"))
        r = await seo.canonical_validation(page(html, url="https://x.test/about"))
    assert r.status == CheckStatus.FAILED


@pytest.mark.asyncio
async def test_oversized_images():
    html = '<img src="/big.jpg"><img src="/small.png"><img src="data:image/png;base64,AAAA">'
    with respx.mock(assert_all_called=False) as router:
        router.head("https://x.test/big.jpg").respond(200, headers={"Content-Length": str(900 * 1024)})
        router.head("https://x.test/small.png").respond(200, headers={"Content-Length": "2048"})
        r = await seo.oversized_images(page(html))
    assert r.status == CheckStatus.FAILED
    assert r.details["count"] == 1
    assert r.details["images"][0]["src"] == "https://x.test/big.jpg"


@pytest.mark.asyncio
async def test_duplicate_titles_and_descriptions():
    pages = (
        PageSnapshot(url="https://x.test", title="Home", meta_description="Same"),
        PageSnapshot(url="https://x.test/a", title="Home", meta_description="Same"),
        PageSnapshot(url="https://x.test/b", title="B", meta_description="Other"),
        PageSnapshot(url="https://x.test/doc.pdf", title="doc.pdf", is_resource=True),
        PageSnapshot(url="https://x.test/doc2.pdf", title="doc.pdf", is_resource=True),
    )
    ctx = page("", pages=pages)
    r = await seo.duplicate_titles(ctx)
    assert r.status == CheckStatus.FAILED
    assert r.details["duplicateCount"] == 1
    assert r.details["duplicates"][0]["urls"] == ["https://x.test", "https://x.test/a"]
    r = await seo.duplicate_meta_descriptions(ctx)
    assert r.status == CheckStatus.WARNING


@pytest.mark.asyncio
async def test_broken_internal_links():
    pages = (
        PageSnapshot(url="https://x.test", status_code=200),
        PageSnapshot(url="https://x.test/gone", status_code=404),
        PageSnapshot(url="https://x.test/err", status_code=500),
    )
    r = await seo.broken_internal_links(page("", pages=pages))
    assert r.status == CheckStatus.FAILED
    assert r.details["brokenCount"] == 2
    assert r.details["byStatus"] == {"404": ["https://x.test/gone"], "500": ["https://x.test/err"]}


@pytest.mark.asyncio
async def test_redirect_chain_of_three_hops_fails():
    pages = (PageSnapshot(url="https://x.test/r1", status_code=301),)
    with respx.mock(assert_all_called=False) as router:
        router.head("https://x.test/r1").respond(301, headers={"Location": "/r2"})
        router.head("https://x.test/r2").respond(301, headers={"Location": "/r3"})
        router.head("https://x.test/r3").respond(302, headers={"Location": "/final"})
        router.head("https://x.test/final").respond(200)
        r = await seo.redirect_chains(page("", pages=pages))
    assert r.status == CheckStatus.FAILED
    assert r.details["maxHops"] == 3


@pytest.mark.asyncio
async def test_robots_txt():
    with respx.mock(assert_all_called=False) as router:
        router.get("https://x.test/robots.txt").respond(200, text="User-agent: *\nDisallow: /admin\n")
        r = await seo.missing_robots_txt(page(""))
    assert r.status == CheckStatus.PASSED
    assert r.details["hasCrawlRules"]

    with respx.mock(assert_all_called=False) as router:
        router.get("https://x.test/robots.txt").respond(404)
        r = await seo.missing_robots_txt(page(""))
    assert r.status == CheckStatus.FAILED


@pytest.mark.asyncio
async def test_sitemap_declared_in_robots():
    with respx.mock(assert_all_called=False) as router:
        router.get("https://x.test/robots.txt").respond(200, text="Sitemap: https://cdn.x.test/map.xml\n")
        router.head("https://cdn.x.test/map.xml").respond(200)
        router.route().respond(404)
        r = await seo.missing_sitemap(page(""))
    assert r.status == CheckStatus.PASSED
    assert r.details["sitemap_url"] == "https://cdn.x.test/map.xml"


@pytest.mark.asyncio
async def test_http_to_https_redirect():
    with respx.mock(assert_all_called=False) as router:
        router.head("http://x.test/").respond(301, headers={"Location": "https://x.test/"})
        r = await seo.http_to_https_redirect(page(""))
    assert r.status == CheckStatus.PASSED

    with respx.mock(assert_all_called=False) as router:
        router.head("http://x.test/").respond(200)
        r = await seo.http_to_https_redirect(page(""))
    assert r.status == CheckStatus.FAILED
