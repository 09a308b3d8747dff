"""Sitemap discovery and single-page fetching over httpx."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from collections import deque
from collections.abc import AsyncIterator
from urllib.parse import urldefrag, urljoin, urlparse

import httpx

from app.core.errors import EmptyContent, FetchError, ValidationError
from app.services.html_extract import html_to_text

logger = logging.getLogger(__name__)

# Probed in order when the seed is a site root and robots.txt has no hint
SITEMAP_CANDIDATES = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap-index.xml",
    "/sitemap/sitemap.xml",
)

EXCLUDED_EXTENSIONS = frozenset(
    {
        # images
        ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico", ".bmp", ".tiff",
        # documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # archives
        ".zip", ".tar", ".gz", ".rar", ".7z",
        # media
        ".mp3", ".mp4", ".avi", ".mov", ".wav", ".webm", ".ogg",
        # assets
        ".css", ".js", ".json", ".xml", ".rss", ".atom",
        ".woff", ".woff2", ".ttf", ".eot",
    }
)


def validate_url(url: str) -> str:
    """Return *url* stripped, or raise ValidationError if it isn't absolute http(s)."""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL: {url or '(empty)'}")
    return url


def is_page_url(url: str) -> bool:
    """True for http(s) URLs that don't point at a static asset."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    path = parsed.path.lower()
    last = path.rsplit("/", 1)[-1]
    if "." in last and "." + last.rsplit(".", 1)[-1] in EXCLUDED_EXTENSIONS:
        return False
    return True


def _local(tag: str) -> str:
    # "{http://www.sitemaps.org/schemas/sitemap/0.9}loc" -> "loc"
    return tag.rsplit("}", 1)[-1].lower()


def parse_sitemap(content: bytes) -> tuple[str, list[str]]:
    """Parse sitemap XML into ("urlset" | "sitemapindex", [loc, ...]).

    Raises:
        ValueError: If the document is not a sitemap.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ValueError(f"invalid XML: {exc}") from exc

    kind = _local(root.tag)
    if kind not in ("urlset", "sitemapindex"):
        raise ValueError(f"unexpected root element <{kind}>")

    locs: list[str] = []
    for entry in root:
        for child in entry:
            if _local(child.tag) == "loc" and child.text and child.text.strip():
                locs.append(child.text.strip())
    return kind, locs


class SitemapCrawler:
    """Discovers page URLs from sitemaps and fetches page text."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        max_urls: int = 1000,
        timeout: float = 30.0,
        user_agent: str = "Sourcebot/1.0",
    ) -> None:
        self.http = http
        self.max_urls = max_urls
        self.timeout = timeout
        self.user_agent = user_agent

    @classmethod
    def create(
        cls,
        max_urls: int = 1000,
        timeout: float = 30.0,
        user_agent: str = "Sourcebot/1.0",
    ) -> SitemapCrawler:
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )
        return cls(http, max_urls=max_urls, timeout=timeout, user_agent=user_agent)

    async def aclose(self) -> None:
        await self.http.aclose()

    # ── Discovery ────────────────────────────────────────────

    async def discover(self, seed_url: str, limit: int | None = None) -> AsyncIterator[str]:
        """Yield unique page URLs reachable from *seed_url*'s sitemap(s).

        *seed_url* is either a sitemap (``*.xml``) or a site root. At most
        ``min(limit, max_urls)`` URLs are yielded.

        Raises:
            FetchError: If no sitemap can be found or the seed sitemap is unreadable.
        """
        seed_url = validate_url(seed_url)
        cap = self.max_urls if limit is None else max(0, min(limit, self.max_urls))
        if cap == 0:
            return

        if urlparse(seed_url).path.lower().endswith(".xml"):
            kind, locs = await self._load_sitemap(seed_url)
            root_url = seed_url
        else:
            root_url, kind, locs = await self._find_root_sitemap(seed_url)

        seen: set[str] = set()
        visited: set[str] = {root_url}
        # Loaded sitemaps, or child sitemap URLs fetched only once they are reached
        pending: deque[tuple[str, list[str]] | str] = deque([(kind, locs)])
        yielded = 0

        while pending:
            item = pending.popleft()
            if isinstance(item, str):
                try:
                    kind, locs = await self._load_sitemap(item)
                except FetchError as exc:
                    logger.warning("Skipping child sitemap %s: %s", item, exc.message)
                    continue
            else:
                kind, locs = item

            if kind == "sitemapindex":
                for child_url in locs:
                    if child_url not in visited:
                        visited.add(child_url)
                        pending.append(child_url)
                continue

            for loc in locs:
                url = urldefrag(loc)[0]
                if url in seen or not is_page_url(url):
                    continue
                seen.add(url)
                yield url
                yielded += 1
                if yielded >= cap:
                    return

    async def _find_root_sitemap(self, site_url: str) -> tuple[str, str, list[str]]:
        parsed = urlparse(site_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        candidates = await self._robots_sitemaps(origin)
        candidates += [origin + path for path in SITEMAP_CANDIDATES if origin + path not in candidates]

        for candidate in candidates:
            try:
                kind, locs = await self._load_sitemap(candidate)
            except FetchError:
                continue
            logger.info("Using sitemap %s for %s", candidate, site_url)
            return candidate, kind, locs
        raise FetchError(f"No sitemap found for {origin}")

    async def _robots_sitemaps(self, origin: str) -> list[str]:
        """``Sitemap:`` hints from robots.txt; missing robots.txt is not an error."""
        try:
            response = await self.http.get(urljoin(origin, "/robots.txt"), timeout=self.timeout)
        except httpx.HTTPError:
            return []
        if response.status_code != 200:
            return []
        hints: list[str] = []
        for line in response.text.splitlines():
            key, _, value = line.partition(":")
            if key.strip().lower() == "sitemap" and value.strip():
                hint = value.strip()
                if hint not in hints:
                    hints.append(hint)
        return hints

    async def _load_sitemap(self, url: str) -> tuple[str, list[str]]:
        content = await self._get(url)
        try:
            return parse_sitemap(content)
        except ValueError as exc:
            raise FetchError(f"Invalid sitemap at {url}: {exc}") from exc

    # ── Page fetch ───────────────────────────────────────────

    async def fetch_page(self, url: str) -> str:
        """Fetch *url* and return its readable text.

        Raises:
            FetchError: On network failure or a non-2xx response.
            EmptyContent: If the page has no readable text.
        """
        response = await self._request(url)
        content_type = response.headers.get("content-type", "").lower()
        if "html" in content_type or not content_type:
            text = html_to_text(response.text)
        elif content_type.startswith("text/"):
            text = response.text.strip()
        else:
            raise FetchError(f"Unsupported content type {content_type.split(';')[0]} at {url}")
        if not text.strip():
            raise EmptyContent(f"No readable content at {url}")
        return text

    async def _get(self, url: str) -> bytes:
        return (await self._request(url)).content

    async def _request(self, url: str) -> httpx.Response:
        try:
            response = await self.http.get(url, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Could not fetch {url}: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            raise FetchError(f"HTTP {response.status_code} fetching {url}")
        return response
