"""
Database-backed store for bulk jobs and their queue items.

Every job's rows have a single writer (its worker), so each update commits on
its own; no cross-row transaction is needed.

Usage:
    job = await job_store.create_job(db, job_id, total, total_batches, "game", config)
    await job_store.add_to_queue(db, job_id, [{"name": "Hades", "external_ref": 113112}])
    await job_store.update_queue_item(db, job_id, "Hades", status="processing")
    await job_store.update_job(db, job_id, processed=1, successful=1, failed=0, skipped=0)
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, update, func
from sqlalchemy.orm import selectinload
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List, Iterable

from bulkqueue.models.bulk_job import (
    BulkJob,
    BulkJobItem,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_STATUSES,
    JOB_LIVE_STATUSES,
    JOB_TERMINAL_STATUSES,
    ITEM_PENDING,
    ITEM_STATUS_RANK,
)
from bulkqueue.services.progress import estimate_time_remaining, percent_complete
from bulkqueue.utils.logger import logger


JOB_FIELDS = frozenset({
    "status", "processed", "successful", "failed", "skipped",
    "current_batch", "total_batches", "estimated_time_remaining",
    "errors", "reviews", "error", "config",
})
ITEM_FIELDS = frozenset({"status", "error", "review_id", "external_ref"})
COUNTER_FIELDS = ("processed", "successful", "failed", "skipped")


class InvalidTransition(ValueError):
    """Raised when an update would break a job or item invariant."""


async def create_job(
    db: AsyncSession,
    job_id: str,
    total: int,
    total_batches: int,
    category: str,
    config: Dict[str, Any],
) -> BulkJob:
    """Create a pending job row. Items are added separately with add_to_queue."""
    now = datetime.now(timezone.utc)
    job = BulkJob(
        id=job_id,
        category=category,
        status=JOB_PENDING,
        total=total,
        processed=0,
        successful=0,
        failed=0,
        skipped=0,
        current_batch=0,
        total_batches=total_batches,
        start_time=now,
        config=config,
        errors=[],
        reviews=[],
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.commit()
    logger.info("job.created", extra={"job_id": job_id, "category": category, "total": total})
    return job


async def get_job(db: AsyncSession, job_id: str) -> Optional[BulkJob]:
    """Load a job and its items (ordered by position), always fresh from the database"""
    result = await db.execute(
        select(BulkJob)
        .where(BulkJob.id == job_id)
        .options(selectinload(BulkJob.items))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_job_status(db: AsyncSession, job_id: str) -> Optional[str]:
    """Cheap status read used for cancellation polling"""
    result = await db.execute(select(BulkJob.status).where(BulkJob.id == job_id))
    return result.scalar_one_or_none()


async def update_job(db: AsyncSession, job_id: str, **changes: Any) -> Optional[BulkJob]:
    """
    Apply a partial update to a job.

    Recomputes the ETA when `processed` or `status` changes and stamps
    completed_at on terminal statuses. `total` is fixed at creation and a
    terminal status is final. Use finish_job to end a job that may be
    cancelled concurrently.
    """
    if "total" in changes:
        raise InvalidTransition("total is fixed at job creation")
    unknown = set(changes) - JOB_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")
    if "status" in changes and changes["status"] not in JOB_STATUSES:
        raise ValueError(f"Unknown job status: {changes['status']}")

    result = await db.execute(
        select(BulkJob).where(BulkJob.id == job_id).execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if not job:
        return None

    if (
        "status" in changes
        and job.status in JOB_TERMINAL_STATUSES
        and changes["status"] != job.status
    ):
        raise InvalidTransition(f"job {job_id}: {job.status} -> {changes['status']}")

    for key, value in changes.items():
        setattr(job, key, value)

    if any(key in changes for key in COUNTER_FIELDS):
        if job.processed != job.successful + job.failed + job.skipped:
            await db.rollback()
            raise InvalidTransition(
                f"processed ({job.processed}) != successful + failed + skipped "
                f"({job.successful} + {job.failed} + {job.skipped})"
            )

    now = datetime.now(timezone.utc)
    if "processed" in changes or "status" in changes:
        if job.status == JOB_RUNNING:
            job.estimated_time_remaining = estimate_time_remaining(
                job.total, job.processed, job.start_time, now
            )
        else:
            job.estimated_time_remaining = None

    if "status" in changes and job.status in JOB_TERMINAL_STATUSES:
        job.completed_at = now
    job.updated_at = now

    await db.commit()
    return job


async def finish_job(
    db: AsyncSession,
    job_id: str,
    status: str,
    error: Optional[str] = None,
) -> Optional[str]:
    """
    Move a live job to a terminal status in a single conditional UPDATE.

    Returns the status the job actually ends up in: if another writer already
    finished it (e.g. a cancel landing just before completion), that status
    wins and is returned unchanged. None if the job does not exist.
    """
    if status not in JOB_TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal job status: {status}")

    now = datetime.now(timezone.utc)
    values = {
        "status": status,
        "estimated_time_remaining": None,
        "completed_at": now,
        "updated_at": now,
    }
    if error is not None:
        values["error"] = error

    await db.execute(
        update(BulkJob)
        .where(BulkJob.id == job_id, BulkJob.status.in_(JOB_LIVE_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return await get_job_status(db, job_id)


async def update_queue_item(
    db: AsyncSession,
    job_id: str,
    name: str,
    **changes: Any,
) -> Optional[BulkJobItem]:
    """Update one item by name. Status moves forward only; terminal states never revert."""
    unknown = set(changes) - ITEM_FIELDS
    if unknown:
        raise ValueError(f"Unknown item fields: {sorted(unknown)}")

    result = await db.execute(
        select(BulkJobItem)
        .where(BulkJobItem.job_id == job_id, BulkJobItem.name == name)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if not item:
        return None

    new_status = changes.get("status")
    if new_status is not None:
        if new_status not in ITEM_STATUS_RANK:
            raise ValueError(f"Unknown item status: {new_status}")
        current_rank = ITEM_STATUS_RANK[item.status]
        if ITEM_STATUS_RANK[new_status] < current_rank or (
            current_rank == 2 and new_status != item.status
        ):
            raise InvalidTransition(f"item {name!r}: {item.status} -> {new_status}")

    for key, value in changes.items():
        setattr(item, key, value)
    item.updated_at = datetime.now(timezone.utc)

    await db.commit()
    return item


async def add_to_queue(db: AsyncSession, job_id: str, items: Iterable[Dict[str, Any]]) -> int:
    """Append pending items to a job, preserving the given order. Returns the count added."""
    result = await db.execute(
        select(func.max(BulkJobItem.position)).where(BulkJobItem.job_id == job_id)
    )
    last_position = result.scalar_one_or_none()
    next_position = 0 if last_position is None else last_position + 1

    now = datetime.now(timezone.utc)
    added = 0
    for offset, item in enumerate(items):
        db.add(BulkJobItem(
            job_id=job_id,
            position=next_position + offset,
            name=item["name"],
            external_ref=item.get("external_ref"),
            status=ITEM_PENDING,
            created_at=now,
            updated_at=now,
        ))
        added += 1
    await db.commit()
    return added


async def list_running_jobs(db: AsyncSession) -> List[BulkJob]:
    """Jobs a restarted process has to pick up again (pending or running), oldest first"""
    result = await db.execute(
        select(BulkJob)
        .where(BulkJob.status.in_(JOB_LIVE_STATUSES))
        .order_by(BulkJob.created_at.asc())
    )
    return list(result.scalars().all())


async def list_jobs(db: AsyncSession, status: Optional[str] = None, limit: int = 50) -> List[BulkJob]:
    """Most recent jobs first, optionally filtered by status"""
    query = select(BulkJob).order_by(BulkJob.created_at.desc()).limit(limit)
    if status:
        query = query.where(BulkJob.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_queue_stats(db: AsyncSession) -> Dict[str, int]:
    """Job counts per status plus the overall total"""
    result = await db.execute(
        select(BulkJob.status, func.count(BulkJob.id)).group_by(BulkJob.status)
    )
    stats = {status: 0 for status in JOB_STATUSES}
    for status, count in result.all():
        stats[status] = count
    stats["total"] = sum(stats[status] for status in JOB_STATUSES)
    return stats


async def delete_job(db: AsyncSession, job_id: str) -> bool:
    """Delete a job and its items. Returns False if the job does not exist."""
    job = await get_job(db, job_id)
    if not job:
        return False
    await db.delete(job)
    await db.commit()
    logger.info("job.deleted", extra={"job_id": job_id})
    return True


async def cleanup_old_jobs(db: AsyncSession, retention: timedelta = timedelta(hours=1)) -> int:
    """Delete completed/failed jobs created before now - retention. Returns count deleted."""
    cutoff = datetime.now(timezone.utc) - retention
    stale_ids = select(BulkJob.id).where(
        BulkJob.status.in_((JOB_COMPLETED, JOB_FAILED)),
        BulkJob.created_at < cutoff,
    )
    await db.execute(
        delete(BulkJobItem)
        .where(BulkJobItem.job_id.in_(stale_ids))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        delete(BulkJob)
        .where(BulkJob.id.in_(stale_ids))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount
    if count > 0:
        logger.info("job.cleanup", extra={"deleted": count})
    return count


def _isoformat(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def serialize_job(job: BulkJob, include_items: bool = True) -> Dict[str, Any]:
    """Status query payload: counters, batches, ETA, outputs and (optionally) items"""
    response = {
        "job_id": job.id,
        "category": job.category,
        "status": job.status,
        "total": job.total,
        "processed": job.processed,
        "successful": job.successful,
        "failed": job.failed,
        "skipped": job.skipped,
        "progress": percent_complete(job.total, job.processed),
        "current_batch": job.current_batch,
        "total_batches": job.total_batches,
        "start_time": _isoformat(job.start_time),
        "estimated_time_remaining": job.estimated_time_remaining,
        "reviews": list(job.reviews or []),
        "errors": list(job.errors or []),
        "created_at": _isoformat(job.created_at),
        "updated_at": _isoformat(job.updated_at),
        "completed_at": _isoformat(job.completed_at),
    }
    if job.error:
        response["error"] = job.error
    if include_items:
        response["items"] = [
            {
                "name": item.name,
                "external_ref": item.external_ref,
                "status": item.status,
                "error": item.error,
                "review_id": item.review_id,
                "created_at": _isoformat(item.created_at),
            }
            for item in job.items
        ]
    return response
