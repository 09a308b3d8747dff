"""ARQ worker entrypoint."""

import logging

from arq import cron
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.workers.ingest import ingest_source
from app.workers.recover import requeue_stalled_sources

logger = logging.getLogger(__name__)

settings = get_settings()


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from app.core.database import async_session_factory, init_db
    from app.services.container import build_services

    configure_logging(settings.log_level)
    await init_db()
    services = build_services(settings, async_session_factory)
    await services.vector_store.ensure_collection()
    ctx["services"] = services
    logger.info("Ingestion worker ready (max_jobs=%d)", settings.worker_max_jobs)


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    services = ctx.get("services")
    if services is not None:
        await services.aclose()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [ingest_source]
    cron_jobs = [cron(requeue_stalled_sources, minute=set(range(0, 60, 5)))]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.job_timeout_seconds
    # Source state lives in SQL; a retried job re-claims via the stale-claim path
    max_tries = 1
    # Free the ingest:<id> job id as soon as a job finishes
    keep_result = 0


if __name__ == "__main__":
    from arq import run_worker
    run_worker(WorkerSettings)  # type: ignore[arg-type]
