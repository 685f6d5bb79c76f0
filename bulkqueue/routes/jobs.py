"""
Bulk Job API Routes

Submit bulk review jobs, poll their progress, list them, cancel and delete.
Every endpoint requires the admin token.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from bulkqueue.config import get_settings
from bulkqueue.database import get_db
from bulkqueue.middleware.auth import require_admin
from bulkqueue.models.bulk_job import JOB_STATUSES
from bulkqueue.schemas.bulk_job import BulkJobRequest
from bulkqueue.services import job_store
from bulkqueue.services.exceptions import JobNotFoundError, JobStateError, ServiceError, SubmissionError
from bulkqueue.services.scheduler import BulkJobScheduler, get_scheduler
from bulkqueue.utils.logger import logger

router = APIRouter(dependencies=[Depends(require_admin)])

# Rate limiter
from slowapi import Limiter
from slowapi.util import get_remote_address
limiter = Limiter(key_func=get_remote_address)

settings = get_settings()


def _http_error(exc: ServiceError) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail="Job not found")
    if isinstance(exc, JobStateError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, SubmissionError):
        return HTTPException(status_code=400, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


@router.post("")
@limiter.limit(settings.submit_rate_limit)
async def submit_job(
    request: Request,
    body: BulkJobRequest,
    scheduler: BulkJobScheduler = Depends(get_scheduler),
):
    """
    Start a bulk job and return immediately.

    Items come from `items`, from `names`, or (for catalog categories with a
    registered item source) from `count` + `query_options`. Poll
    GET /api/jobs/{job_id} for progress.
    """
    try:
        response = await scheduler.submit(body)
    except ServiceError as exc:
        logger.warning(
            "job.submit_rejected",
            extra={"category": body.category, "error": exc.message, "error_type": exc.code},
        )
        raise _http_error(exc)
    return response.model_dump()


@router.get("/stats")
async def queue_stats(db: AsyncSession = Depends(get_db)):
    """Job counts per status"""
    return {"success": True, "stats": await job_store.get_queue_stats(db)}


@router.get("")
async def list_jobs(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    scheduler: BulkJobScheduler = Depends(get_scheduler),
):
    """Most recent jobs first (without their items)"""
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    jobs = await job_store.list_jobs(db, status=status, limit=limit)
    return {
        "success": True,
        "jobs": [job_store.serialize_job(job, include_items=False) for job in jobs],
        "running": scheduler.running_job_ids(),
    }


@router.get("/{job_id}")
async def get_job_status(job_id: str, db: AsyncSession = Depends(get_db)):
    """Progress, counters, ETA, outputs and per-item status of one job"""
    job = await job_store.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_store.serialize_job(job)


@router.post("/{job_id}/cancel")
async def cancel_job(job_id: str, scheduler: BulkJobScheduler = Depends(get_scheduler)):
    """Stop a job at its next item boundary"""
    try:
        job = await scheduler.cancel(job_id)
    except ServiceError as exc:
        raise _http_error(exc)
    return {"success": True, "job_id": job.id, "status": job.status}


@router.delete("/{job_id}")
async def delete_job(job_id: str, scheduler: BulkJobScheduler = Depends(get_scheduler)):
    """Delete a finished job and its items"""
    try:
        await scheduler.delete(job_id)
    except ServiceError as exc:
        raise _http_error(exc)
    return {"success": True}
