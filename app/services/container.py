"""Explicitly constructed service graph shared by the API and the worker."""

from __future__ import annotations

from dataclasses import dataclass

from arq.connections import RedisSettings

from app.core.config import Settings
from app.services.crawler import SitemapCrawler
from app.services.embedding import EmbeddingClient
from app.services.gate import ModelGate
from app.services.orchestrator import ChatEngine
from app.services.pipeline import IngestionPipeline
from app.services.retrieval import Retriever
from app.services.status_events import SourceStatusBroker
from app.services.storage import FileStorage
from app.services.vector_store import VectorStore
from app.workers.queue import IngestQueue


@dataclass
class Services:
    settings: Settings
    session_factory: object
    gate: ModelGate
    embedder: EmbeddingClient
    vector_store: VectorStore
    crawler: SitemapCrawler
    storage: FileStorage
    broker: SourceStatusBroker | None
    queue: IngestQueue
    pipeline: IngestionPipeline
    retriever: Retriever
    chat_engine: ChatEngine

    async def aclose(self) -> None:
        await self.crawler.aclose()
        await self.queue.aclose()
        await self.vector_store.close()
        if self.broker is not None:
            await self.broker.aclose()


def build_services(
    settings: Settings,
    session_factory,
    *,
    vector_store: VectorStore | None = None,
    crawler: SitemapCrawler | None = None,
    broker: SourceStatusBroker | None = None,
    queue: IngestQueue | None = None,
    storage: FileStorage | None = None,
) -> Services:
    """Wire every collaborator from *settings*; tests pass fakes for the I/O edges."""
    gate = ModelGate(settings.model_concurrency)
    embedder = EmbeddingClient(
        model=settings.default_embedding_model,
        dimensions=settings.embedding_dimensions,
        gate=gate,
        batch_size=settings.embedding_batch_size,
        max_attempts=settings.embedding_max_attempts,
        backoff_seconds=settings.embedding_backoff_seconds,
        timeout_seconds=settings.embedding_timeout_seconds,
        api_key=settings.llm_api_key or None,
    )
    if vector_store is None:
        vector_store = VectorStore.from_url(
            settings.qdrant_url, settings.qdrant_collection, settings.embedding_dimensions,
        )
    if crawler is None:
        crawler = SitemapCrawler.create(
            max_urls=settings.sitemap_max_urls,
            timeout=settings.crawl_timeout_seconds,
            user_agent=settings.crawler_user_agent,
        )
    if broker is None:
        broker = SourceStatusBroker.from_url(settings.redis_url)
    if queue is None:
        queue = IngestQueue(RedisSettings.from_dsn(settings.redis_url))
    if storage is None:
        storage = FileStorage(settings.upload_dir)

    pipeline = IngestionPipeline(
        session_factory,
        embedder=embedder,
        vector_store=vector_store,
        crawler=crawler,
        storage=storage,
        broker=broker,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        embedding_parallelism=settings.embedding_parallelism,
        stale_claim_minutes=settings.stale_claim_minutes,
        error_message_max_length=settings.error_message_max_length,
    )
    retriever = Retriever(embedder, vector_store)
    chat_engine = ChatEngine(
        session_factory,
        retriever=retriever,
        gate=gate,
        max_context_chunks=settings.max_context_chunks,
        max_prompt_tokens=settings.max_prompt_tokens,
        timeout_seconds=settings.chat_timeout_seconds,
        idle_timeout_seconds=settings.chat_idle_timeout_seconds,
        api_key=settings.llm_api_key or None,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        gate=gate,
        embedder=embedder,
        vector_store=vector_store,
        crawler=crawler,
        storage=storage,
        broker=broker,
        queue=queue,
        pipeline=pipeline,
        retriever=retriever,
        chat_engine=chat_engine,
    )
