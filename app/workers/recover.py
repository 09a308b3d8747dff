"""Periodic job — re-enqueue sources that never reached a worker or lost theirs."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import and_, or_
from sqlmodel import select

from app.models.base import utcnow
from app.models.source import Source, SourceStatus
from app.services.container import Services
from app.workers.queue import INGEST_TASK, ingest_job_id

logger = logging.getLogger(__name__)

# Pending this long without a claim means the enqueue was lost
PENDING_GRACE = timedelta(minutes=5)


async def requeue_stalled_sources(ctx: dict) -> dict:
    """Enqueue pending sources past the grace period and processing ones with stale claims.

    When run by ARQ, ``ctx["redis"]`` is the worker's ArqRedis pool.
    For tests, callers inject a mock pool via ``ctx["redis"]``.
    """
    services: Services = ctx["services"]
    now = utcnow()
    stale_before = now - timedelta(minutes=services.settings.stale_claim_minutes)

    async with services.session_factory() as session:
        stmt = select(Source.id).where(
            Source.deleted_at.is_(None),
            or_(
                and_(Source.status == SourceStatus.PENDING, Source.created_at < now - PENDING_GRACE),
                and_(Source.status == SourceStatus.PROCESSING, Source.claimed_at < stale_before),
            ),
        )
        result = await session.execute(stmt)
        source_ids = list(result.scalars().all())

    if not source_ids:
        return {"enqueued": 0}

    redis = ctx["redis"]
    enqueued = 0
    for source_id in source_ids:
        job = await redis.enqueue_job(INGEST_TASK, str(source_id), _job_id=ingest_job_id(source_id))
        if job is not None:
            enqueued += 1

    logger.info("Recovery sweep: enqueued %d of %d stalled sources", enqueued, len(source_ids))
    return {"enqueued": enqueued}
