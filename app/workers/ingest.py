"""Ingestion worker task — processes a Source into chunks and vectors."""

from __future__ import annotations

import logging
import uuid

from app.services.container import Services

logger = logging.getLogger(__name__)


async def ingest_source(ctx: dict, source_id: str) -> dict:
    """ARQ task: run the ingestion pipeline for one source.

    Args:
        ctx: ARQ worker context; ``ctx["services"]`` is set at startup.
        source_id: UUID of the Source to process.

    Returns:
        dict with the final status and chunk_count.
    """
    services: Services = ctx["services"]
    try:
        sid = uuid.UUID(source_id)
    except ValueError:
        logger.error("Ignoring ingest job with malformed source id %r", source_id)
        return {"status": "invalid"}

    result = await services.pipeline.run(sid)
    return {
        "status": str(result.status),
        "chunk_count": result.chunk_count,
        "error": result.error,
    }
