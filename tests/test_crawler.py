"""Sitemap discovery and page fetch tests (httpx MockTransport)."""

import httpx
import pytest

from app.core.errors import EmptyContent, FetchError, ValidationError
from app.services.crawler import SitemapCrawler, is_page_url, parse_sitemap

SITE = "https://docs.example.com"
XML = "application/xml"
HTML = "text/html; charset=utf-8"


def _urlset(*locs: str) -> str:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return f'<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'


def _index(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'


async def _discover(crawler: SitemapCrawler, seed: str, limit: int | None = None) -> list[str]:
    return [url async for url in crawler.discover(seed, limit=limit)]


def test_parse_sitemap_without_namespace():
    kind, locs = parse_sitemap(b"<urlset><url><loc> https://a.com/x </loc></url></urlset>")
    assert kind == "urlset"
    assert locs == ["https://a.com/x"]


def test_parse_sitemap_rejects_html():
    with pytest.raises(ValueError):
        parse_sitemap(b"<html><body>nope</body></html>")
    with pytest.raises(ValueError):
        parse_sitemap(b"not xml at all <")


def test_is_page_url_filters_assets():
    assert is_page_url("https://a.com/docs/install")
    assert is_page_url("https://a.com/v1.2/guide")
    assert not is_page_url("https://a.com/logo.png")
    assert not is_page_url("https://a.com/manual.PDF")
    assert not is_page_url("ftp://a.com/file")


async def test_discover_direct_sitemap(crawler, web):
    web[f"{SITE}/sitemap.xml"] = (200, _urlset(f"{SITE}/a", f"{SITE}/b"), XML)

    assert await _discover(crawler, f"{SITE}/sitemap.xml") == [f"{SITE}/a", f"{SITE}/b"]


async def test_discover_uses_robots_hint(crawler, web):
    web[f"{SITE}/robots.txt"] = (200, f"User-agent: *\nSitemap: {SITE}/custom-map.xml\n", "text/plain")
    web[f"{SITE}/custom-map.xml"] = (200, _urlset(f"{SITE}/from-robots"), XML)
    web[f"{SITE}/sitemap.xml"] = (200, _urlset(f"{SITE}/from-default"), XML)

    assert await _discover(crawler, SITE) == [f"{SITE}/from-robots"]


async def test_discover_falls_back_to_candidates(crawler, web):
    web[f"{SITE}/sitemap_index.xml"] = (200, _urlset(f"{SITE}/page"), XML)

    assert await _discover(crawler, f"{SITE}/docs/") == [f"{SITE}/page"]


async def test_discover_without_sitemap_fails(crawler):
    with pytest.raises(FetchError, match="No sitemap found"):
        await _discover(crawler, SITE)


async def test_discover_walks_index_and_dedupes(crawler, web):
    web[f"{SITE}/sitemap.xml"] = (
        200,
        _index(f"{SITE}/s1.xml", f"{SITE}/s2.xml", f"{SITE}/missing.xml", f"{SITE}/s1.xml"),
        XML,
    )
    web[f"{SITE}/s1.xml"] = (200, _urlset(f"{SITE}/a", f"{SITE}/b#intro", f"{SITE}/img.png"), XML)
    web[f"{SITE}/s2.xml"] = (200, _urlset(f"{SITE}/b", f"{SITE}/c"), XML)

    urls = await _discover(crawler, f"{SITE}/sitemap.xml")

    assert urls == [f"{SITE}/a", f"{SITE}/b", f"{SITE}/c"]


async def test_discover_respects_limit(crawler, web):
    web[f"{SITE}/sitemap.xml"] = (200, _urlset(*[f"{SITE}/p{i}" for i in range(20)]), XML)

    urls = await _discover(crawler, f"{SITE}/sitemap.xml", limit=3)

    assert urls == [f"{SITE}/p0", f"{SITE}/p1", f"{SITE}/p2"]


async def test_discover_caps_at_max_urls(web):
    web[f"{SITE}/sitemap.xml"] = (200, _urlset(*[f"{SITE}/p{i}" for i in range(20)]), XML)

    def handler(request: httpx.Request) -> httpx.Response:
        status, body, ctype = web[str(request.url)]
        return httpx.Response(status, text=body, headers={"content-type": ctype})

    small = SitemapCrawler(httpx.AsyncClient(transport=httpx.MockTransport(handler)), max_urls=5)
    try:
        urls = await _discover(small, f"{SITE}/sitemap.xml", limit=100)
    finally:
        await small.aclose()

    assert len(urls) == 5


async def test_discover_loads_child_sitemaps_lazily(web):
    children = [f"{SITE}/part-{i}.xml" for i in range(20)]
    web[f"{SITE}/sitemap.xml"] = (200, _index(*children), XML)
    for i, child in enumerate(children):
        web[child] = (200, _urlset(f"{SITE}/page-{i}"), XML)
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        status, body, ctype = web[str(request.url)]
        return httpx.Response(status, text=body, headers={"content-type": ctype})

    lazy = SitemapCrawler(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        urls = await _discover(lazy, f"{SITE}/sitemap.xml", limit=1)
    finally:
        await lazy.aclose()

    assert urls == [f"{SITE}/page-0"]
    assert requested == [f"{SITE}/sitemap.xml", f"{SITE}/part-0.xml"]


async def test_discover_rejects_invalid_seed(crawler):
    with pytest.raises(ValidationError):
        await _discover(crawler, "not-a-url")


async def test_fetch_page_html(crawler, web):
    web[f"{SITE}/a"] = (200, "<title>A</title><main><p>Alpha text</p></main>", HTML)

    assert await crawler.fetch_page(f"{SITE}/a") == "# A\n\nAlpha text"


async def test_fetch_page_plain_text(crawler, web):
    web[f"{SITE}/notes"] = (200, "  plain notes \n", "text/plain")

    assert await crawler.fetch_page(f"{SITE}/notes") == "plain notes"


async def test_fetch_page_http_error(crawler, web):
    web[f"{SITE}/gone"] = (500, "boom", HTML)

    with pytest.raises(FetchError, match="HTTP 500"):
        await crawler.fetch_page(f"{SITE}/gone")


async def test_fetch_page_binary_content(crawler, web):
    web[f"{SITE}/file"] = (200, "%PDF", "application/pdf")

    with pytest.raises(FetchError, match="Unsupported content type"):
        await crawler.fetch_page(f"{SITE}/file")


async def test_fetch_page_empty(crawler, web):
    web[f"{SITE}/blank"] = (200, "<html><body><script>x()</script></body></html>", HTML)

    with pytest.raises(EmptyContent):
        await crawler.fetch_page(f"{SITE}/blank")


async def test_fetch_page_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    crawler = SitemapCrawler(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    try:
        with pytest.raises(FetchError, match="Timed out"):
            await crawler.fetch_page(f"{SITE}/slow")
    finally:
        await crawler.aclose()
