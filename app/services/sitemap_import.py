"""Sitemap crawl use case — one child source per discovered page.

Discovery, page fetch and text extraction happen inside the request so the
response can report which pages made it; embedding of the children runs on
the worker pool like any other source.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SourcebotError, bounded_error_message
from app.core.tiers import TierLimits
from app.models.bot import Bot
from app.models.source import Source, SourceStatus, SourceType
from app.services.crawler import SitemapCrawler
from app.services.quota import check_source_quota, check_storage_quota, storage_exceeded

logger = logging.getLogger(__name__)


@dataclass
class _PageOutcome:
    url: str
    text: str | None = None
    error: str | None = None


@dataclass
class SitemapImport:
    total_urls: int
    # Discovery order; None where the page failed
    sources: list[Source | None]
    failed: list[Source]

    @property
    def created_count(self) -> int:
        return sum(1 for s in self.sources if s is not None)


async def import_sitemap(
    session: AsyncSession,
    bot: Bot,
    limits: TierLimits,
    crawler: SitemapCrawler,
    seed_url: str,
    limit: int | None = None,
    concurrency: int = 4,
    error_message_max_length: int = 2000,
) -> SitemapImport:
    """Crawl *seed_url* and create ``sitemap-child`` sources for *bot*.

    Successful pages become pending sources carrying the page text; failed
    pages become failed sources with a bounded error message. The caller
    enqueues ingestion for the pending ones.

    Raises:
        QuotaExceeded: If the bot has no free source slot or the owner no storage left.
        ValidationError / FetchError: If the seed URL or its sitemap is unusable.
    """
    remaining = await check_source_quota(session, bot, limits)
    if remaining is not None:
        limit = remaining if limit is None else min(limit, remaining)
    storage_left = await check_storage_quota(session, bot, limits, 1)

    urls = [url async for url in crawler.discover(seed_url, limit=limit)]
    logger.info("Sitemap %s: discovered %d URLs for bot %s", seed_url, len(urls), bot.id)

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _fetch(url: str) -> _PageOutcome:
        async with semaphore:
            try:
                return _PageOutcome(url=url, text=await crawler.fetch_page(url))
            except SourcebotError as exc:
                logger.info("Sitemap page %s failed: %s", url, exc.message)
                return _PageOutcome(url=url, error=bounded_error_message(exc, error_message_max_length))

    outcomes = await asyncio.gather(*(_fetch(url) for url in urls))

    created: list[Source | None] = []
    failed: list[Source] = []
    for outcome in outcomes:
        source = Source(
            bot_id=bot.id,
            name=_page_name(outcome),
            source_type=SourceType.SITEMAP_CHILD,
            url=outcome.url,
        )
        size = len(outcome.text.encode("utf-8")) if outcome.text is not None else 0
        if outcome.text is not None and storage_left is not None and size > storage_left:
            outcome.error = bounded_error_message(storage_exceeded(limits), error_message_max_length)
            outcome.text = None
        if outcome.text is not None:
            source.content = outcome.text
            source.size_bytes = size
            if storage_left is not None:
                storage_left -= size
            created.append(source)
        else:
            source.status = SourceStatus.FAILED
            source.error_message = outcome.error
            created.append(None)
            failed.append(source)
        session.add(source)

    await session.commit()
    logger.info(
        "Sitemap %s: %d pages imported, %d failed", seed_url, len(urls) - len(failed), len(failed),
    )
    return SitemapImport(total_urls=len(urls), sources=created, failed=failed)


def _page_name(outcome: _PageOutcome) -> str:
    if outcome.text and outcome.text.startswith("# "):
        title = outcome.text.split("\n", 1)[0][2:].strip()
        if title:
            return title[:255]
    return outcome.url[:255]
