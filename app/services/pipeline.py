"""Ingestion pipeline — drives a Source through pending → processing → completed | failed.

Every state change is a conditional UPDATE so concurrent workers, user
deletes and stale claims can race without corrupting a source:

* claim: only one caller moves a pending (or stale processing) source to
  processing;
* progress: only ever increases while the source is processing;
* completion: only lands if the source is still processing and not deleted.

Stage progress: extraction 0–20, chunking 20–30, embedding 30–95,
persistence 95–100.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SourcebotError, bounded_error_message
from app.models.base import utcnow
from app.models.chunk import DocumentChunk
from app.models.source import Source, SourceStatus, SourceType
from app.services.chunking import TextChunk, chunk_text
from app.services.crawler import SitemapCrawler
from app.services.embedding import EmbeddingClient
from app.services.extract import extract_text
from app.services.status_events import SourceStatusBroker
from app.services.storage import FileStorage
from app.services.vector_store import VectorPoint, VectorStore, chunk_point_id

logger = logging.getLogger(__name__)

PROGRESS_EXTRACTED = 20
PROGRESS_CHUNKED = 30
PROGRESS_EMBEDDED = 95
PROGRESS_DONE = 100


@dataclass
class IngestResult:
    source_id: uuid.UUID
    status: str
    chunk_count: int = 0
    error: str | None = None


class IngestionPipeline:
    def __init__(
        self,
        session_factory,
        embedder: EmbeddingClient,
        vector_store: VectorStore,
        crawler: SitemapCrawler,
        storage: FileStorage,
        broker: SourceStatusBroker | None = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 150,
        embedding_parallelism: int = 4,
        stale_claim_minutes: int = 15,
        error_message_max_length: int = 2000,
    ) -> None:
        self.session_factory = session_factory
        self.embedder = embedder
        self.vector_store = vector_store
        self.crawler = crawler
        self.storage = storage
        self.broker = broker
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embedding_parallelism = max(1, embedding_parallelism)
        self.stale_claim_minutes = stale_claim_minutes
        self.error_message_max_length = error_message_max_length

    # ── Entry point ──────────────────────────────────────────

    async def run(self, source_id: uuid.UUID) -> IngestResult:
        """Process one source end to end. Never raises for pipeline failures."""
        if not await self.claim(source_id):
            logger.info("Source %s not claimable (already claimed, terminal or deleted)", source_id)
            return IngestResult(source_id=source_id, status="skipped")

        await self._publish(source_id)
        try:
            async with self.session_factory() as session:
                source = await session.get(Source, source_id)
            if source is None:
                return IngestResult(source_id=source_id, status="skipped")

            text = await self._extract(source)
            await self.set_progress(source_id, PROGRESS_EXTRACTED)

            chunks = chunk_text(text, chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap)
            await self.set_progress(source_id, PROGRESS_CHUNKED)

            vectors = await self._embed(source_id, chunks)
            await self.set_progress(source_id, PROGRESS_EMBEDDED)

            completed = await self._persist(source, chunks, vectors)
        except Exception as exc:
            message = bounded_error_message(exc, self.error_message_max_length)
            if isinstance(exc, SourcebotError):
                logger.warning("Ingestion failed for source %s: %s", source_id, message)
            else:
                logger.exception("Ingestion failed for source %s", source_id)
            await self.fail(source_id, message)
            return IngestResult(source_id=source_id, status=SourceStatus.FAILED, error=message)

        if not completed:
            logger.info("Source %s was deleted during ingestion, discarded its chunks", source_id)
            return IngestResult(source_id=source_id, status="discarded")

        await self._publish(source_id)
        logger.info("Ingested source %s: %d chunks", source_id, len(chunks))
        return IngestResult(source_id=source_id, status=SourceStatus.COMPLETED, chunk_count=len(chunks))

    # ── State transitions ────────────────────────────────────

    async def claim(self, source_id: uuid.UUID) -> bool:
        """Atomically move a pending (or stale processing) source to processing."""
        now = utcnow()
        stale_before = now - timedelta(minutes=self.stale_claim_minutes)
        stmt = (
            update(Source)
            .where(
                Source.id == source_id,
                Source.deleted_at.is_(None),
                or_(
                    Source.status == SourceStatus.PENDING,
                    and_(
                        Source.status == SourceStatus.PROCESSING,
                        Source.claimed_at < stale_before,
                    ),
                ),
            )
            .values(
                status=SourceStatus.PROCESSING,
                claimed_at=now,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def set_progress(self, source_id: uuid.UUID, progress: int) -> bool:
        """Raise processing_progress; lower or equal values are ignored."""
        progress = max(0, min(progress, PROGRESS_DONE))
        stmt = (
            update(Source)
            .where(
                Source.id == source_id,
                Source.status == SourceStatus.PROCESSING,
                Source.processing_progress < progress,
            )
            .values(processing_progress=progress, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        if result.rowcount == 1:
            await self._publish(source_id)
            return True
        return False

    async def fail(self, source_id: uuid.UUID, message: str) -> None:
        now = utcnow()
        stmt = (
            update(Source)
            .where(Source.id == source_id, Source.status == SourceStatus.PROCESSING)
            .values(
                status=SourceStatus.FAILED,
                error_message=message or "Processing failed",
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        await self._publish(source_id)

    # ── Stages ───────────────────────────────────────────────

    async def _extract(self, source: Source) -> str:
        if source.source_type in (SourceType.TEXT, SourceType.SITEMAP_CHILD):
            return source.content or ""
        if source.source_type == SourceType.URL:
            return await self.crawler.fetch_page(source.url or "")
        data = await self.storage.read(source.file_path or "")
        await self.set_progress(source.id, 10)
        return await asyncio.to_thread(
            extract_text, source.original_filename or "", data, source.content_type,
        )

    async def _embed(self, source_id: uuid.UUID, chunks: list[TextChunk]) -> list[list[float]]:
        """Embed chunk batches concurrently, returning vectors in chunk order."""
        if not chunks:
            return []
        size = self.embedder.batch_size
        batches = [
            [c.content for c in chunks[i : i + size]]
            for i in range(0, len(chunks), size)
        ]
        semaphore = asyncio.Semaphore(self.embedding_parallelism)

        async def _one(texts: list[str]) -> list[list[float]]:
            async with semaphore:
                return await self.embedder.embed_batch(texts)

        tasks = [asyncio.create_task(_one(batch)) for batch in batches]
        done = 0
        span = PROGRESS_EMBEDDED - PROGRESS_CHUNKED
        try:
            for next_done in asyncio.as_completed(tasks):
                await next_done
                done += 1
                await self.set_progress(source_id, PROGRESS_CHUNKED + span * done // len(tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return [vector for task in tasks for vector in task.result()]

    async def _persist(
        self, source: Source, chunks: list[TextChunk], vectors: list[list[float]],
    ) -> bool:
        """Replace the source's chunks and vectors, then mark it completed.

        Returns False if the source was deleted (or taken over) meanwhile; the
        vectors written here are removed again in that case.
        """
        await self.vector_store.delete_source(source.id)
        await self.vector_store.upsert([
            VectorPoint(
                id=chunk_point_id(source.id, chunk.index),
                vector=vector,
                payload={
                    "bot_id": str(source.bot_id),
                    "source_id": str(source.id),
                    "chunk_index": chunk.index,
                    "content": chunk.content,
                },
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ])

        now = utcnow()
        try:
            return await self._commit_chunks(source, chunks, now)
        except Exception:
            await self.vector_store.delete_source(source.id)
            raise

    async def _commit_chunks(self, source: Source, chunks: list[TextChunk], now) -> bool:
        async with self.session_factory() as session:
            await session.execute(delete(DocumentChunk).where(DocumentChunk.source_id == source.id))
            session.add_all([
                DocumentChunk(
                    id=chunk_point_id(source.id, chunk.index),
                    source_id=source.id,
                    bot_id=source.bot_id,
                    chunk_index=chunk.index,
                    content=chunk.content,
                    char_count=chunk.char_count,
                )
                for chunk in chunks
            ])
            await session.flush()
            result = await session.execute(
                update(Source)
                .where(
                    Source.id == source.id,
                    Source.status == SourceStatus.PROCESSING,
                    Source.deleted_at.is_(None),
                )
                .values(
                    status=SourceStatus.COMPLETED,
                    processing_progress=PROGRESS_DONE,
                    chunk_count=len(chunks),
                    error_message=None,
                    processed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                await self.vector_store.delete_source(source.id)
                return False
            await session.commit()
        return True

    # ── Cleanup ──────────────────────────────────────────────

    async def purge(self, session: AsyncSession, source: Source) -> None:
        """Soft-delete *source* and remove its chunks, vectors and stored file."""
        now = utcnow()
        source.deleted_at = now
        source.updated_at = now
        session.add(source)
        await session.execute(delete(DocumentChunk).where(DocumentChunk.source_id == source.id))
        await session.commit()
        await self.vector_store.delete_source(source.id)
        if source.file_path:
            await self.storage.delete(source.file_path)

    async def _publish(self, source_id: uuid.UUID) -> None:
        if self.broker is None:
            return
        async with self.session_factory() as session:
            source = await session.get(Source, source_id)
        if source is not None:
            await self.broker.publish(source)
