"""
Bulk job scheduler.

BulkJobWorker drives one job: items are processed strictly one at a time, in
submitted order, batch by batch, with per-item persistence so an interrupted
run can be resumed without re-invoking finished items.

BulkJobScheduler owns the worker tasks of this process: it submits new jobs,
starts (or restarts) workers, and relays cancellation.

Usage:
    scheduler = get_scheduler()
    scheduler.registry.register("game", my_game_producer)
    response = await scheduler.submit(BulkJobRequest(category="game", items=[...]))
    await scheduler.cancel(response.job_id)
"""
import asyncio
import math
import re
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from bulkqueue.config import get_settings
from bulkqueue.database import AsyncSessionLocal
from bulkqueue.models.bulk_job import (
    BulkJob,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_CANCELLED,
    JOB_LIVE_STATUSES,
    JOB_TERMINAL_STATUSES,
    ITEM_PROCESSING,
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_SKIPPED,
    ITEM_TERMINAL_STATUSES,
)
from bulkqueue.schemas.bulk_job import BulkJobRequest, QueueItemIn, SubmitResponse, parse_job_config
from bulkqueue.services import job_store
from bulkqueue.services.exceptions import JobNotFoundError, JobStateError, SubmissionError
from bulkqueue.services.producers import ErrorKind, ProduceOptions, ProduceResult, Producer, ProducerRegistry
from bulkqueue.services.retry_policy import RetryPolicy
from bulkqueue.utils.logger import logger
from bulkqueue.utils.metrics import inc


def generate_slug(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


@dataclass
class RunResults:
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    reviews: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.skipped


# ---------------------------------------------------------------------------
# Worker (one job)
# ---------------------------------------------------------------------------

class BulkJobWorker:
    """Runs the batch loop for one job until it completes, is cancelled, or faults."""

    def __init__(
        self,
        job_id: str,
        config,
        producer: Producer,
        session_factory=AsyncSessionLocal,
        cancel_event: Optional[asyncio.Event] = None,
        retry_base_delay: float = 2.0,
        retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.job_id = job_id
        self.config = config
        self.producer = producer
        self._session_factory = session_factory
        self._cancel_event = cancel_event
        self._retry = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=retry_base_delay,
            sleep=retry_sleep,
            service=f"producer.{config.category}",
        )
        self._options = ProduceOptions(status=config.status, skip_existing=config.skip_existing)

    async def run(self) -> Optional[str]:
        """Returns the job status the run ended in (None if the job vanished)."""
        try:
            return await self._run()
        except asyncio.CancelledError:
            # Process shutdown: the job stays running and is resumed on next start
            logger.info("worker.interrupted", extra={"job_id": self.job_id})
            raise
        except Exception as exc:
            logger.error(
                "worker.fault",
                extra={"job_id": self.job_id, "error": str(exc)[:500], "error_type": type(exc).__name__},
                exc_info=True,
            )
            async with self._session_factory() as db:
                final = await job_store.finish_job(db, self.job_id, JOB_FAILED, error=str(exc)[:1000])
            if final == JOB_FAILED:
                inc("jobs.failed")
            return final

    async def _run(self) -> Optional[str]:
        async with self._session_factory() as db:
            job = await job_store.get_job(db, self.job_id)
            if job is None:
                logger.error("worker.job_missing", extra={"job_id": self.job_id})
                return None
            if job.status in JOB_TERMINAL_STATUSES:
                logger.info("worker.already_finished", extra={"job_id": self.job_id, "status": job.status})
                return job.status

            results = self._seed_results(job)
            item_status = {item.name: item.status for item in job.items}
            if job.status == JOB_PENDING:
                await job_store.update_job(db, self.job_id, status=JOB_RUNNING)

            items: List[QueueItemIn] = list(self.config.items)
            batch_size = self.config.batch_size
            total_batches = math.ceil(len(items) / batch_size)
            logger.info(
                "worker.started",
                extra={
                    "job_id": self.job_id,
                    "category": self.config.category,
                    "total": len(items),
                    "processed": results.processed,
                    "total_batches": total_batches,
                },
            )

            for batch_index in range(total_batches):
                batch_number = batch_index + 1
                batch = items[batch_index * batch_size:(batch_index + 1) * batch_size]
                logger.info(
                    "worker.batch_started",
                    extra={"job_id": self.job_id, "batch": batch_number, "total_batches": total_batches},
                )
                await job_store.update_job(db, self.job_id, current_batch=batch_number)

                for position, item in enumerate(batch):
                    if await self._should_stop(db):
                        return JOB_CANCELLED

                    if item_status.get(item.name) in ITEM_TERMINAL_STATUSES:
                        logger.debug("worker.item_already_done", extra={"job_id": self.job_id, "item": item.name})
                        continue

                    await job_store.update_queue_item(db, self.job_id, item.name, status=ITEM_PROCESSING)

                    if position > 0:
                        await self._pause(self.config.delay_between_items_ms / 1000)
                        if self._cancel_requested():
                            return await self._stopped()

                    result = await self._retry.call(
                        self.producer.process_item, item, self._options, item=item.name
                    )
                    item_status[item.name] = await self._record(db, item, result, results)

                if batch_number < total_batches:
                    await self._pause(self.config.delay_between_batches_ms / 1000)

            if await self._should_stop(db):
                return JOB_CANCELLED

            final = await job_store.finish_job(db, self.job_id, JOB_COMPLETED)

        if final != JOB_COMPLETED:
            # cancelled (or deleted) between the last boundary check and completion
            logger.info("worker.finished_elsewhere", extra={"job_id": self.job_id, "status": final})
            return final

        inc("jobs.completed")
        logger.info(
            "worker.completed",
            extra={
                "job_id": self.job_id,
                "successful": results.successful,
                "failed": results.failed,
                "skipped": results.skipped,
            },
        )
        return JOB_COMPLETED

    def _seed_results(self, job: BulkJob) -> RunResults:
        """
        Start from the persisted counters. If a crash landed between an item
        update and the job update, rebuild the counters from the item rows.
        """
        counts = Counter(item.status for item in job.items)
        from_items = (counts[ITEM_COMPLETED], counts[ITEM_FAILED], counts[ITEM_SKIPPED])
        if from_items == (job.successful, job.failed, job.skipped):
            return RunResults(
                successful=job.successful,
                failed=job.failed,
                skipped=job.skipped,
                reviews=list(job.reviews or []),
                errors=list(job.errors or []),
            )

        logger.warning(
            "worker.counters_reconciled",
            extra={
                "job_id": self.job_id,
                "successful": from_items[0],
                "failed": from_items[1],
                "skipped": from_items[2],
            },
        )
        results = RunResults(successful=from_items[0], failed=from_items[1], skipped=from_items[2])
        for item in job.items:
            if item.status == ITEM_COMPLETED:
                results.reviews.append(self._review_entry(item.name, item.review_id, item.external_ref))
            elif item.status == ITEM_FAILED:
                results.errors.append(self._error_entry(item.name, item.error, item.external_ref))
        return results

    @staticmethod
    def _review_entry(name: str, review_id: str, external_ref: Optional[int]) -> Dict[str, Any]:
        entry = {"id": review_id, "title": name, "slug": generate_slug(name)}
        if external_ref is not None:
            entry["external_ref"] = external_ref
        return entry

    @staticmethod
    def _error_entry(name: str, error: Optional[str], external_ref: Optional[int]) -> Dict[str, Any]:
        entry = {"item": name, "error": error or "Unknown error"}
        if external_ref is not None:
            entry["external_ref"] = external_ref
        return entry

    async def _record(self, db, item: QueueItemIn, result: ProduceResult, results: RunResults) -> str:
        """Classify one outcome, persist the item and the job counters. Returns the item status."""
        if result.success and result.review_id:
            results.successful += 1
            results.reviews.append(self._review_entry(item.name, result.review_id, item.external_ref))
            await job_store.update_queue_item(
                db, self.job_id, item.name, status=ITEM_COMPLETED, review_id=result.review_id
            )
            status = ITEM_COMPLETED
            inc("items.completed")
            logger.info(
                "worker.item_completed",
                extra={"job_id": self.job_id, "item": item.name, "review_id": result.review_id},
            )
        elif result.kind == ErrorKind.ALREADY_EXISTS:
            results.skipped += 1
            await job_store.update_queue_item(db, self.job_id, item.name, status=ITEM_SKIPPED)
            status = ITEM_SKIPPED
            inc("items.skipped")
            logger.info("worker.item_skipped", extra={"job_id": self.job_id, "item": item.name})
        else:
            error = result.error or ("Producer returned no review id" if result.success else "Unknown error")
            results.failed += 1
            results.errors.append(self._error_entry(item.name, error, item.external_ref))
            await job_store.update_queue_item(db, self.job_id, item.name, status=ITEM_FAILED, error=error)
            status = ITEM_FAILED
            inc("items.failed")
            logger.warning(
                "worker.item_failed",
                extra={"job_id": self.job_id, "item": item.name, "error": error[:200]},
            )

        await job_store.update_job(
            db,
            self.job_id,
            processed=results.processed,
            successful=results.successful,
            failed=results.failed,
            skipped=results.skipped,
            reviews=list(results.reviews),
            errors=list(results.errors),
        )
        return status

    def _cancel_requested(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def _should_stop(self, db) -> bool:
        """Item-boundary check: cancellation signal first, then the persisted status."""
        if self._cancel_requested():
            await self._stopped()
            return True
        status = await job_store.get_job_status(db, self.job_id)
        if status is None:
            logger.warning("worker.job_deleted", extra={"job_id": self.job_id})
            return True
        if status == JOB_CANCELLED:
            await self._stopped()
            return True
        return False

    async def _stopped(self) -> str:
        inc("jobs.cancelled")
        logger.info("worker.cancelled", extra={"job_id": self.job_id})
        return JOB_CANCELLED

    async def _pause(self, seconds: float) -> None:
        """Sleep between items/batches; a cancellation signal cuts it short."""
        if seconds <= 0:
            return
        if self._cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


# ---------------------------------------------------------------------------
# Scheduler (all jobs of this process)
# ---------------------------------------------------------------------------

class BulkJobScheduler:
    """Submits jobs and owns one asyncio task per running job."""

    def __init__(
        self,
        registry: Optional[ProducerRegistry] = None,
        session_factory=AsyncSessionLocal,
        retry_base_delay: Optional[float] = None,
        retry_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = get_settings()
        self.registry = registry or ProducerRegistry()
        self._session_factory = session_factory
        self._retry_base_delay = (
            self.settings.retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self._retry_sleep = retry_sleep
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    # -- submission ---------------------------------------------------------

    async def submit(self, request: BulkJobRequest) -> SubmitResponse:
        """Create the job and its queue, start the worker, and return without waiting."""
        category = request.category
        if not self.registry.has(category):
            raise SubmissionError("unknown_category", f"No producer registered for category: {category}")

        try:
            items = await self._resolve_items(request)
        except ValidationError as exc:
            raise SubmissionError("invalid_items", f"Invalid item list: {exc.error_count()} error(s)") from exc
        if request.count:
            items = items[:request.count]
        if not items:
            raise SubmissionError("no_items", f"No {category} items found matching the criteria")

        seen = set()
        duplicates = []
        for item in items:
            if item.name in seen:
                duplicates.append(item.name)
            seen.add(item.name)
        if duplicates:
            raise SubmissionError(
                "duplicate_items", f"Item names must be unique within a job: {sorted(set(duplicates))}"
            )

        settings = self.settings
        config = parse_job_config({
            "category": category,
            "items": [item.model_dump() for item in items],
            "query_options": request.query_options,
            "batch_size": request.batch_size or settings.default_batch_size,
            "delay_between_batches_ms": _default(request.delay_between_batches_ms, settings.default_delay_between_batches_ms),
            "delay_between_items_ms": _default(request.delay_between_items_ms, settings.default_delay_between_items_ms),
            "status": request.status,
            "skip_existing": request.skip_existing,
            "max_retries": request.max_retries or settings.default_max_retries,
        })

        job_id = str(uuid.uuid4())
        total_batches = math.ceil(len(items) / config.batch_size)
        async with self._session_factory() as db:
            await job_store.create_job(
                db, job_id, len(items), total_batches, category, config.model_dump(mode="json")
            )
            await job_store.add_to_queue(db, job_id, [item.model_dump() for item in items])
            await job_store.update_job(db, job_id, status=JOB_RUNNING)

        self.start(job_id, config)
        inc("jobs.submitted")
        logger.info(
            "job.submitted",
            extra={"job_id": job_id, "category": category, "total": len(items), "total_batches": total_batches},
        )
        return SubmitResponse(job_id=job_id, total=len(items), category=category)

    async def _resolve_items(self, request: BulkJobRequest) -> List[QueueItemIn]:
        if request.items:
            return list(request.items)
        if request.names:
            return [QueueItemIn(name=name.strip()) for name in request.names if name.strip()]

        source = self.registry.get_source(request.category)
        if source is None:
            raise SubmissionError(
                "no_item_source",
                f"items or names are required for the {request.category} category",
            )
        if not request.count:
            raise SubmissionError("count_required", "count is required when items come from the catalog")
        try:
            return list(await source.fetch_items(request.count, request.query_options))
        except Exception as exc:
            logger.error(
                "job.item_source_failed",
                extra={"category": request.category, "error": str(exc)[:200]},
            )
            raise SubmissionError(
                "item_source_failed", f"Failed to fetch {request.category} items: {exc}"
            ) from exc

    # -- worker tasks -------------------------------------------------------

    def start(self, job_id: str, config) -> asyncio.Task:
        """Start the worker task for a job. A job with a live task keeps its task."""
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing

        producer = self.registry.get(config.category)
        cancel_event = asyncio.Event()
        worker = BulkJobWorker(
            job_id,
            config,
            producer,
            session_factory=self._session_factory,
            cancel_event=cancel_event,
            retry_base_delay=self._retry_base_delay,
            retry_sleep=self._retry_sleep,
        )
        task = asyncio.create_task(worker.run(), name=f"bulk-job-{job_id}")
        self._tasks[job_id] = task
        self._cancel_events[job_id] = cancel_event
        task.add_done_callback(lambda t, job_id=job_id: self._on_task_done(job_id, t))
        inc("jobs.started")
        return task

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "worker.task_error",
                extra={"job_id": job_id, "error": str(exc)[:500], "error_type": type(exc).__name__},
                exc_info=exc,
            )

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def running_job_ids(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[str]:
        """Wait for a job's worker task to finish; returns the job's persisted status."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        async with self._session_factory() as db:
            return await job_store.get_job_status(db, job_id)

    async def cancel(self, job_id: str) -> BulkJob:
        """Mark a live job cancelled; its worker stops at the next item boundary."""
        async with self._session_factory() as db:
            status = await job_store.get_job_status(db, job_id)
            if status is None:
                raise JobNotFoundError(job_id)
            if status not in JOB_LIVE_STATUSES:
                raise JobStateError("job_not_cancellable", f"Job is already {status}")
            final = await job_store.finish_job(db, job_id, JOB_CANCELLED)
            if final is None:
                raise JobNotFoundError(job_id)
            if final != JOB_CANCELLED:
                raise JobStateError("job_not_cancellable", f"Job is already {final}")
            job = await job_store.get_job(db, job_id)

        event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()
        logger.info("job.cancelled", extra={"job_id": job_id})
        return job

    async def delete(self, job_id: str) -> None:
        """Delete a finished job. Live jobs (or ones whose worker is still winding down) are refused."""
        async with self._session_factory() as db:
            status = await job_store.get_job_status(db, job_id)
            if status is None:
                raise JobNotFoundError(job_id)
            if status in JOB_LIVE_STATUSES or self.is_running(job_id):
                raise JobStateError("job_running", "Cancel the job before deleting it")
            await job_store.delete_job(db, job_id)

    async def shutdown(self) -> None:
        """Cancel live worker tasks. Their jobs stay running and resume on next start."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("scheduler.shutdown", extra={"count": len(tasks)})


def _default(value: Optional[int], fallback: int) -> int:
    return fallback if value is None else value


# Singleton
_scheduler: Optional[BulkJobScheduler] = None


def get_scheduler() -> BulkJobScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BulkJobScheduler()
    return _scheduler
