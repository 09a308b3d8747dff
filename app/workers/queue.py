"""Enqueue side of the ARQ ingestion queue."""

from __future__ import annotations

import logging
import uuid

from arq.connections import ArqRedis, RedisSettings, create_pool

logger = logging.getLogger(__name__)

INGEST_TASK = "ingest_source"


def ingest_job_id(source_id: uuid.UUID | str) -> str:
    """One queued job per source; ARQ drops duplicates with the same id."""
    return f"ingest:{source_id}"


class IngestQueue:
    def __init__(self, redis_settings: RedisSettings) -> None:
        self.redis_settings = redis_settings
        self._pool: ArqRedis | None = None

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        return self._pool

    async def enqueue(self, source_id: uuid.UUID) -> None:
        pool = await self._get_pool()
        job = await pool.enqueue_job(INGEST_TASK, str(source_id), _job_id=ingest_job_id(source_id))
        if job is None:
            logger.info("Ingestion of source %s already queued", source_id)

    async def aclose(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
