import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from bulkqueue.models.bulk_job import BulkJob
from bulkqueue.services import job_store
from bulkqueue.services.job_store import InvalidTransition


async def _job(session, names=("A", "B", "C"), status=None, category="product"):
    job_id = str(uuid.uuid4())
    config = {"category": category, "items": [{"name": n} for n in names]}
    await job_store.create_job(session, job_id, len(names), 1, category, config)
    await job_store.add_to_queue(session, job_id, [{"name": n} for n in names])
    if status:
        await job_store.update_job(session, job_id, status=status)
    return job_id


async def test_create_job_starts_pending_with_zero_counters(session):
    job_id = await _job(session)
    job = await job_store.get_job(session, job_id)
    assert job.status == "pending"
    assert (job.total, job.processed, job.successful, job.failed, job.skipped) == (3, 0, 0, 0, 0)
    assert job.current_batch == 0
    assert job.estimated_time_remaining is None
    assert [item.name for item in job.items] == ["A", "B", "C"]
    assert {item.status for item in job.items} == {"pending"}


async def test_add_to_queue_appends_after_existing_items(session):
    job_id = await _job(session, names=("A",))
    added = await job_store.add_to_queue(session, job_id, [{"name": "B", "external_ref": 42}, {"name": "C"}])
    assert added == 2
    job = await job_store.get_job(session, job_id)
    assert [(i.name, i.position, i.external_ref) for i in job.items] == [("A", 0, None), ("B", 1, 42), ("C", 2, None)]


async def test_update_job_rejects_counter_mismatch(session):
    job_id = await _job(session)
    with pytest.raises(InvalidTransition):
        await job_store.update_job(session, job_id, processed=2, successful=1, failed=0, skipped=0)

    job = await job_store.get_job(session, job_id)
    assert job.processed == 0


async def test_update_job_rejects_total_and_unknown_fields(session):
    job_id = await _job(session)
    with pytest.raises(InvalidTransition):
        await job_store.update_job(session, job_id, total=10)
    with pytest.raises(ValueError):
        await job_store.update_job(session, job_id, priority=1)
    with pytest.raises(ValueError):
        await job_store.update_job(session, job_id, status="paused")


async def test_update_job_computes_eta_while_running(session):
    job_id = await _job(session, status="running")
    await session.execute(
        update(BulkJob)
        .where(BulkJob.id == job_id)
        .values(start_time=datetime.now(timezone.utc) - timedelta(seconds=100))
    )
    await session.commit()

    job = await job_store.update_job(session, job_id, processed=1, successful=1, failed=0, skipped=0)
    # ~100 s per item, 2 left
    assert 195 <= job.estimated_time_remaining <= 205

    job = await job_store.update_job(session, job_id, status="completed")
    assert job.estimated_time_remaining is None
    assert job.completed_at is not None


async def test_update_job_unknown_id_returns_none(session):
    assert await job_store.update_job(session, "missing", status="running") is None


async def test_item_status_moves_forward_only(session):
    job_id = await _job(session)
    await job_store.update_queue_item(session, job_id, "A", status="processing")
    item = await job_store.update_queue_item(session, job_id, "A", status="completed", review_id="rev-A")
    assert item.status == "completed" and item.review_id == "rev-A"

    with pytest.raises(InvalidTransition):
        await job_store.update_queue_item(session, job_id, "A", status="processing")
    with pytest.raises(InvalidTransition):
        await job_store.update_queue_item(session, job_id, "A", status="failed")

    # processing -> processing is allowed (resumed item)
    await job_store.update_queue_item(session, job_id, "B", status="processing")
    await job_store.update_queue_item(session, job_id, "B", status="processing")


async def test_update_unknown_item_returns_none(session):
    job_id = await _job(session)
    assert await job_store.update_queue_item(session, job_id, "Z", status="processing") is None


async def test_list_running_jobs_excludes_terminal_and_cancelled(session):
    running = await _job(session, status="running")
    pending = await _job(session)
    await _job(session, status="completed")
    await _job(session, status="cancelled")
    await _job(session, status="failed")

    ids = {job.id for job in await job_store.list_running_jobs(session)}
    assert ids == {running, pending}


async def test_list_jobs_filters_and_limits(session):
    for _ in range(3):
        await _job(session, status="completed")
    await _job(session, status="failed")

    assert len(await job_store.list_jobs(session)) == 4
    assert len(await job_store.list_jobs(session, limit=2)) == 2
    failed = await job_store.list_jobs(session, status="failed")
    assert [job.status for job in failed] == ["failed"]


async def test_queue_stats_counts_per_status(session):
    await _job(session, status="running")
    await _job(session, status="completed")
    await _job(session, status="completed")

    stats = await job_store.get_queue_stats(session)
    assert stats["running"] == 1
    assert stats["completed"] == 2
    assert stats["cancelled"] == 0
    assert stats["total"] == 3


async def test_cleanup_deletes_only_old_finished_jobs(session):
    old_completed = await _job(session, status="completed")
    old_running = await _job(session, status="running")
    fresh_failed = await _job(session, status="failed")

    two_hours_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    await session.execute(
        update(BulkJob)
        .where(BulkJob.id.in_([old_completed, old_running]))
        .values(created_at=two_hours_ago)
    )
    await session.commit()

    deleted = await job_store.cleanup_old_jobs(session, retention=timedelta(hours=1))
    assert deleted == 1
    assert await job_store.get_job(session, old_completed) is None
    assert await job_store.get_job(session, old_running) is not None
    assert await job_store.get_job(session, fresh_failed) is not None


async def test_delete_job_removes_items(session):
    job_id = await _job(session, status="completed")
    assert await job_store.delete_job(session, job_id) is True
    assert await job_store.get_job(session, job_id) is None
    assert await job_store.delete_job(session, job_id) is False


async def test_serialize_job(session):
    job_id = await _job(session, names=("Hades",))
    job = await job_store.get_job(session, job_id)
    data = job_store.serialize_job(job)
    assert data["job_id"] == job_id
    assert data["progress"] == 0
    assert data["items"][0]["name"] == "Hades"
    assert "items" not in job_store.serialize_job(job, include_items=False)


async def test_terminal_status_is_final(session):
    job_id = await _job(session, status="cancelled")
    with pytest.raises(InvalidTransition):
        await job_store.update_job(session, job_id, status="completed")

    # counters may still be written after a cancel
    job = await job_store.update_job(session, job_id, processed=1, successful=1, failed=0, skipped=0)
    assert job.status == "cancelled"


async def test_finish_job_only_moves_live_jobs(session):
    cancelled = await _job(session, status="cancelled")
    assert await job_store.finish_job(session, cancelled, "completed") == "cancelled"
    assert await job_store.finish_job(session, cancelled, "failed", error="boom") == "cancelled"
    job = await job_store.get_job(session, cancelled)
    assert job.error is None

    running = await _job(session, status="running")
    assert await job_store.finish_job(session, running, "failed", error="boom") == "failed"
    job = await job_store.get_job(session, running)
    assert job.error == "boom"
    assert job.completed_at is not None
    assert job.estimated_time_remaining is None


async def test_finish_job_rejects_live_status_and_unknown_id(session):
    job_id = await _job(session)
    with pytest.raises(ValueError):
        await job_store.finish_job(session, job_id, "running")
    assert await job_store.finish_job(session, "missing", "completed") is None
