"""Retriever — vector search scoped to one bot, filtered against live sources."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.models.source import Source
from app.services.embedding import EmbeddingClient
from app.services.vector_store import VectorStore


@dataclass
class RetrievedChunk:
    """A chunk retrieved from vector search."""
    chunk_id: str
    content: str
    score: float
    source_id: str
    chunk_index: int = 0


class Retriever:
    def __init__(self, embedder: EmbeddingClient, vector_store: VectorStore) -> None:
        self.embedder = embedder
        self.vector_store = vector_store

    async def retrieve(
        self,
        session: AsyncSession,
        bot_id: uuid.UUID,
        query: str,
        k: int = 5,
    ) -> list[RetrievedChunk]:
        """Top *k* chunks for *query*, best first, ties broken by chunk id."""
        if k <= 0 or not query.strip():
            return []

        vector = await self.embedder.embed_query(query)
        hits = await self.vector_store.search(vector, bot_id=bot_id, limit=2 * k)
        if not hits:
            return []

        source_ids = {hit.payload.get("source_id") for hit in hits}
        live = await _live_source_ids(session, bot_id, source_ids)

        chunks = [
            RetrievedChunk(
                chunk_id=hit.id,
                content=hit.payload.get("content", ""),
                score=hit.score,
                source_id=hit.payload.get("source_id", ""),
                chunk_index=hit.payload.get("chunk_index", 0),
            )
            for hit in hits
            if hit.payload.get("source_id") in live
        ]
        chunks.sort(key=lambda c: (-c.score, c.chunk_id))
        return chunks[:k]


async def _live_source_ids(
    session: AsyncSession, bot_id: uuid.UUID, source_ids: set[str | None],
) -> set[str]:
    ids = []
    for raw in source_ids:
        try:
            ids.append(uuid.UUID(raw))
        except (TypeError, ValueError):
            continue
    if not ids:
        return set()
    rows = await session.execute(
        select(Source.id).where(
            Source.id.in_(ids),
            Source.bot_id == bot_id,
            Source.deleted_at.is_(None),
        )
    )
    return {str(sid) for sid in rows.scalars().all()}
