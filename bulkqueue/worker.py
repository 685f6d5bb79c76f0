"""
Background bulk job worker.

Can run as:
  1. Part of the API process (cleanup task started by the FastAPI startup hook)
  2. Standalone worker process: python -m bulkqueue.worker

The standalone process resumes interrupted jobs, then keeps running the
retention cleanup until it is stopped.
"""
import asyncio
from datetime import timedelta

from bulkqueue.config import get_settings
from bulkqueue.database import AsyncSessionLocal
from bulkqueue.services import job_store
from bulkqueue.utils.logger import logger


async def run_cleanup(interval_seconds: float = 1800.0, retention_hours: float = 1.0) -> None:
    """Periodically delete completed/failed jobs older than the retention window."""
    retention = timedelta(hours=retention_hours)
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            async with AsyncSessionLocal() as db:
                deleted = await job_store.cleanup_old_jobs(db, retention=retention)
                if deleted:
                    logger.info("worker.cleanup", extra={"deleted": deleted})
        except Exception as exc:
            logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from bulkqueue.database import init_db
    from bulkqueue.services.producers import register_http_producers
    from bulkqueue.services.resume_manager import ResumeManager
    from bulkqueue.services.scheduler import get_scheduler

    settings = get_settings()
    await init_db()

    scheduler = get_scheduler()
    if settings.producer_base_url:
        register_http_producers(scheduler.registry, settings.producer_base_url, settings.producer_timeout_seconds)

    resumed = await ResumeManager(scheduler).bootstrap()
    logger.info("worker.started", extra={"count": len(resumed)})

    try:
        await run_cleanup(settings.cleanup_interval_minutes * 60, settings.job_retention_hours)
    finally:
        await scheduler.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
