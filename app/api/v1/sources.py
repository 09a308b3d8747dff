"""Source endpoints — create (url, text, upload, sitemap), poll, stream status, delete."""

import asyncio
import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack

from fastapi import APIRouter, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlmodel import select

from app.api.deps import Auth, Session, Svc
from app.api.v1.bots import get_owned_bot
from app.core.errors import ValidationError
from app.models.source import (
    SitemapCreate,
    SitemapResponse,
    Source,
    SourceRead,
    SourceStatus,
    SourceTextCreate,
    SourceType,
    SourceUrlCreate,
)
from app.services.chat_stream import format_sse
from app.services.container import Services
from app.services.crawler import validate_url
from app.services.extract import resolve_extension
from app.services.quota import check_source_quota, check_storage_quota, get_owner_limits
from app.services.sitemap_import import import_sitemap
from app.services.status_events import status_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bots/{bot_id}/sources", tags=["sources"])


# ── Helpers ───────────────────────────────────────────────────


def _to_read(src: Source) -> SourceRead:
    return SourceRead.model_validate(src)


async def _get_or_404(bot_id: uuid.UUID, source_id: uuid.UUID, session) -> Source:
    stmt = select(Source).where(
        Source.id == source_id,
        Source.bot_id == bot_id,
        Source.deleted_at.is_(None),
    )
    result = await session.execute(stmt)
    src = result.scalar_one_or_none()
    if src is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Source not found")
    return src


_STATUS_RANK = {
    SourceStatus.PENDING: 0,
    SourceStatus.PROCESSING: 1,
    SourceStatus.COMPLETED: 2,
    SourceStatus.FAILED: 2,
}


def _is_newer(payload: dict, current: dict) -> bool:
    """Notifications queued before the status read can be older than it."""
    def rank(p: dict) -> tuple[int, int]:
        return _STATUS_RANK[SourceStatus(p["status"])], p["processing_progress"]

    return rank(payload) > rank(current)


async def _enqueue_ingest(services: Services, source_id: uuid.UUID) -> None:
    """Enqueue an ingest job; a source left pending is picked up by the recovery sweep."""
    try:
        await services.queue.enqueue(source_id)
    except Exception:
        logger.exception("Could not enqueue ingestion for source %s", source_id)


# ── Endpoints ─────────────────────────────────────────────────


@router.post("", response_model=SourceRead, status_code=status.HTTP_201_CREATED)
async def create_url_source(
    bot_id: uuid.UUID,
    body: SourceUrlCreate,
    auth: Auth,
    session: Session,
    services: Svc,
) -> SourceRead:
    url = validate_url(body.url)
    bot = await get_owned_bot(bot_id, auth.user_id, session)
    limits = await get_owner_limits(session, bot)
    await check_source_quota(session, bot, limits)

    src = Source(
        bot_id=bot.id,
        name=body.name or url[:255],
        source_type=SourceType.URL,
        url=url,
    )
    session.add(src)
    await session.commit()
    await session.refresh(src)

    await _enqueue_ingest(services, src.id)
    return _to_read(src)


@router.post("/text", response_model=SourceRead, status_code=status.HTTP_201_CREATED)
async def create_text_source(
    bot_id: uuid.UUID,
    body: SourceTextCreate,
    auth: Auth,
    session: Session,
    services: Svc,
) -> SourceRead:
    if not body.content.strip():
        raise ValidationError("Text content must not be empty")
    size = len(body.content.encode("utf-8"))
    if size > services.settings.max_text_bytes:
        raise ValidationError(
            f"Text too large. Maximum size is {services.settings.max_text_mb} MB."
        )

    bot = await get_owned_bot(bot_id, auth.user_id, session)
    limits = await get_owner_limits(session, bot)
    await check_source_quota(session, bot, limits)
    await check_storage_quota(session, bot, limits, size)

    src = Source(
        bot_id=bot.id,
        name=body.name,
        source_type=SourceType.TEXT,
        content=body.content,
        content_type="text/plain",
        size_bytes=size,
    )
    session.add(src)
    await session.commit()
    await session.refresh(src)

    await _enqueue_ingest(services, src.id)
    return _to_read(src)


@router.post("/upload", response_model=SourceRead, status_code=status.HTTP_201_CREATED)
async def upload_source(
    bot_id: uuid.UUID,
    file: UploadFile,
    auth: Auth,
    session: Session,
    services: Svc,
    name: str | None = Form(None),
) -> SourceRead:
    """Store an uploaded document and trigger ingestion."""
    filename = file.filename or ""
    ext = resolve_extension(filename, file.content_type)

    max_bytes = services.settings.max_upload_bytes
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise ValidationError(
            f"File too large. Maximum size is {services.settings.max_upload_mb} MB."
        )
    if not content:
        raise ValidationError("Uploaded file is empty")

    bot = await get_owned_bot(bot_id, auth.user_id, session)
    limits = await get_owner_limits(session, bot)
    await check_source_quota(session, bot, limits)
    await check_storage_quota(session, bot, limits, len(content))

    src = Source(
        bot_id=bot.id,
        name=(name or filename or "Uploaded file")[:255],
        source_type=SourceType.FILE,
        original_filename=filename or f"upload{ext}",
        content_type=file.content_type,
        size_bytes=len(content),
    )
    src.file_path = await services.storage.save(bot.id, src.id, ext, content)
    session.add(src)
    await session.commit()
    await session.refresh(src)

    await _enqueue_ingest(services, src.id)
    return _to_read(src)


@router.post("/sitemap", response_model=SitemapResponse, status_code=status.HTTP_201_CREATED)
async def create_sitemap_sources(
    bot_id: uuid.UUID,
    body: SitemapCreate,
    auth: Auth,
    session: Session,
    services: Svc,
) -> SitemapResponse:
    """Crawl a sitemap and create one source per page."""
    validate_url(body.url)
    bot = await get_owned_bot(bot_id, auth.user_id, session)
    limits = await get_owner_limits(session, bot)

    result = await import_sitemap(
        session,
        bot,
        limits,
        services.crawler,
        body.url,
        limit=body.limit,
        concurrency=services.settings.crawl_concurrency,
        error_message_max_length=services.settings.error_message_max_length,
    )
    for src in result.sources:
        if src is not None:
            await _enqueue_ingest(services, src.id)

    return SitemapResponse(
        total_urls=result.total_urls,
        created_count=result.created_count,
        sources=[_to_read(s) if s is not None else None for s in result.sources],
    )


@router.get("", response_model=list[SourceRead])
async def list_sources(
    bot_id: uuid.UUID,
    auth: Auth,
    session: Session,
    status_filter: SourceStatus | None = Query(None, alias="status"),
) -> list[SourceRead]:
    await get_owned_bot(bot_id, auth.user_id, session)
    stmt = select(Source).where(Source.bot_id == bot_id, Source.deleted_at.is_(None))
    if status_filter is not None:
        stmt = stmt.where(Source.status == status_filter)
    stmt = stmt.order_by(Source.created_at.desc())  # type: ignore[union-attr]
    result = await session.execute(stmt)
    return [_to_read(s) for s in result.scalars().all()]


@router.get("/{source_id}", response_model=SourceRead)
async def get_source(
    bot_id: uuid.UUID,
    source_id: uuid.UUID,
    auth: Auth,
    session: Session,
) -> SourceRead:
    await get_owned_bot(bot_id, auth.user_id, session)
    return _to_read(await _get_or_404(bot_id, source_id, session))


@router.get("/{source_id}/events")
async def stream_source_events(
    bot_id: uuid.UUID,
    source_id: uuid.UUID,
    auth: Auth,
    session: Session,
    services: Svc,
) -> StreamingResponse:
    """SSE feed of status changes, ending once the source is terminal or deleted.

    The subscription is opened before the first status read so a transition
    in between is not lost. After ``status_events_idle_seconds`` without a
    notification the source is re-read from the database.
    """
    await get_owned_bot(bot_id, auth.user_id, session)
    await _get_or_404(bot_id, source_id, session)
    idle = services.settings.status_events_idle_seconds

    async def _current() -> dict | None:
        async with services.session_factory() as db:
            src = await db.get(Source, source_id)
        if src is None or src.deleted_at is not None:
            return None
        return status_payload(src)

    async def _events() -> AsyncGenerator[str, None]:
        async with AsyncExitStack() as stack:
            updates = None
            if services.broker is not None:
                updates = await stack.enter_async_context(services.broker.subscribe(source_id))

            current = await _current()
            while current is not None:
                yield format_sse(current)
                if SourceStatus(current["status"]).is_terminal:
                    return
                while True:
                    if updates is not None:
                        payload = await updates.next(idle)
                    else:
                        await asyncio.sleep(idle)
                        payload = None
                    if payload is None:
                        payload = await _current()
                    if payload is None or _is_newer(payload, current):
                        break
                current = payload

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_source(
    bot_id: uuid.UUID,
    source_id: uuid.UUID,
    auth: Auth,
    session: Session,
    services: Svc,
) -> None:
    await get_owned_bot(bot_id, auth.user_id, session)
    src = await _get_or_404(bot_id, source_id, session)
    await services.pipeline.purge(session, src)
