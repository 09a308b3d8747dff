"""Qdrant vector store service — collection management, upsert, search, delete."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    VectorParams,
)

# Stable namespace for chunk point ids
_CHUNK_NAMESPACE = uuid.UUID("5b1f0c7e-3d2a-4c1e-9a57-0d6f3e2b8c41")


def chunk_point_id(source_id: uuid.UUID | str, chunk_index: int) -> uuid.UUID:
    """Deterministic id shared by the chunk row and its Qdrant point."""
    return uuid.uuid5(_CHUNK_NAMESPACE, f"{source_id}:{chunk_index}")


@dataclass
class VectorPoint:
    id: uuid.UUID
    vector: list[float]
    payload: dict = field(default_factory=dict)


@dataclass
class ScoredPoint:
    id: str
    score: float
    payload: dict


class VectorStore:
    """One collection per environment, isolated per bot via payload filtering."""

    def __init__(self, client: AsyncQdrantClient, collection: str, dimensions: int) -> None:
        self.client = client
        self.collection = collection
        self.dimensions = dimensions

    @classmethod
    def from_url(cls, url: str, collection: str, dimensions: int) -> VectorStore:
        return cls(AsyncQdrantClient(url=url, check_compatibility=False), collection, dimensions)

    async def ensure_collection(self) -> None:
        """Create the chunk collection if it doesn't exist."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}
        if self.collection not in existing:
            await self.client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(size=self.dimensions, distance=Distance.COSINE),
            )

    async def upsert(self, points: list[VectorPoint]) -> None:
        """Upsert chunk vectors. Payload carries bot_id, source_id, chunk_index, content."""
        if not points:
            return
        await self.client.upsert(
            collection_name=self.collection,
            points=[
                PointStruct(id=str(p.id), vector=p.vector, payload=p.payload)
                for p in points
            ],
            wait=True,
        )

    async def search(
        self,
        vector: list[float],
        bot_id: uuid.UUID | str,
        limit: int = 10,
    ) -> list[ScoredPoint]:
        """Nearest neighbours within one bot's chunks."""
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=Filter(
                must=[FieldCondition(key="bot_id", match=MatchValue(value=str(bot_id)))]
            ),
            limit=limit,
            with_payload=True,
        )
        return [
            ScoredPoint(id=str(hit.id), score=hit.score, payload=hit.payload or {})
            for hit in response.points
        ]

    async def delete_source(self, source_id: uuid.UUID | str) -> None:
        """Delete all vectors belonging to a specific source."""
        await self._delete_where("source_id", str(source_id))

    async def delete_bot(self, bot_id: uuid.UUID | str) -> None:
        await self._delete_where("bot_id", str(bot_id))

    async def close(self) -> None:
        await self.client.close()

    async def _delete_where(self, key: str, value: str) -> None:
        await self.client.delete(
            collection_name=self.collection,
            points_selector=Filter(must=[FieldCondition(key=key, match=MatchValue(value=value))]),
            wait=True,
        )
