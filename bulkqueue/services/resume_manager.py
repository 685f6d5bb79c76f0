"""
Cold-start recovery for bulk jobs.

A job still pending/running in the database when the process starts was
interrupted (crash, deploy, shutdown). bootstrap() rehydrates each one from its
stored config and hands it back to the scheduler; the worker skips items that
already reached a terminal status.

Called once per process, from the FastAPI start-up hook or the standalone
worker's main().
"""
import asyncio
from typing import List, Optional

from pydantic import ValidationError

from bulkqueue.database import AsyncSessionLocal
from bulkqueue.models.bulk_job import JOB_FAILED
from bulkqueue.schemas.bulk_job import parse_job_config
from bulkqueue.services import job_store
from bulkqueue.services.scheduler import BulkJobScheduler
from bulkqueue.utils.logger import logger
from bulkqueue.utils.metrics import inc


class ResumeManager:
    def __init__(self, scheduler: BulkJobScheduler, session_factory=AsyncSessionLocal):
        self.scheduler = scheduler
        self._session_factory = session_factory
        self._lock = asyncio.Lock()
        self._done = False
        self._resumed: List[str] = []

    @property
    def bootstrapped(self) -> bool:
        return self._done

    async def bootstrap(self) -> List[str]:
        """Resume interrupted jobs. Later calls return the first call's result."""
        async with self._lock:
            if self._done:
                return list(self._resumed)
            try:
                self._resumed = await self.resume_running_jobs()
            finally:
                self._done = True
            return list(self._resumed)

    async def resume_running_jobs(self) -> List[str]:
        """
        Restart every live job that has no worker in this process. Safe to call
        again after bootstrap, e.g. once late producers are registered.
        """
        async with self._session_factory() as db:
            jobs = await job_store.list_running_jobs(db)
            if not jobs:
                logger.info("resume.nothing_to_resume")
                return []

            logger.info("resume.started", extra={"count": len(jobs)})
            resumed = []
            for job in jobs:
                if self.scheduler.is_running(job.id):
                    continue

                config = self._load_config(job.id, job.config)
                if config is None:
                    await self._fail(db, job.id, "Job config is missing or invalid; cannot resume")
                    continue
                if not self.scheduler.registry.has(config.category):
                    # left running; resume_running_jobs() picks it up once a producer is registered
                    logger.warning(
                        "resume.no_producer",
                        extra={"job_id": job.id, "category": config.category},
                    )
                    inc("jobs.resume_deferred")
                    continue

                logger.info(
                    "resume.job",
                    extra={
                        "job_id": job.id,
                        "category": config.category,
                        "processed": job.processed,
                        "total": job.total,
                    },
                )
                self.scheduler.start(job.id, config)
                inc("jobs.resumed")
                resumed.append(job.id)

        return resumed

    @staticmethod
    def _load_config(job_id: str, raw) -> Optional[object]:
        if not raw:
            return None
        try:
            return parse_job_config(raw)
        except ValidationError as exc:
            logger.warning(
                "resume.invalid_config",
                extra={"job_id": job_id, "error": str(exc)[:200], "error_type": type(exc).__name__},
            )
            return None

    @staticmethod
    async def _fail(db, job_id: str, error: str) -> None:
        logger.error("resume.job_failed", extra={"job_id": job_id, "error": error})
        if await job_store.finish_job(db, job_id, JOB_FAILED, error=error) == JOB_FAILED:
            inc("jobs.failed")
