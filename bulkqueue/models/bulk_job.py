"""
SQLAlchemy models for the bulk review queue: one BulkJob row per submitted
bulk run and one BulkJobItem row per item of that run.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import relationship
from bulkqueue.database import Base
import uuid


# Job status: pending → running → completed | failed | cancelled
JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
JOB_LIVE_STATUSES = (JOB_PENDING, JOB_RUNNING)
JOB_TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)

# Item status: pending → processing → completed | failed | skipped
ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_COMPLETED = "completed"
ITEM_FAILED = "failed"
ITEM_SKIPPED = "skipped"

ITEM_TERMINAL_STATUSES = (ITEM_COMPLETED, ITEM_FAILED, ITEM_SKIPPED)

# Forward-only ordering used to reject status regressions
ITEM_STATUS_RANK = {
    ITEM_PENDING: 0,
    ITEM_PROCESSING: 1,
    ITEM_COMPLETED: 2,
    ITEM_FAILED: 2,
    ITEM_SKIPPED: 2,
}


class BulkJob(Base):
    __tablename__ = "bulk_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    category = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=JOB_PENDING, index=True)

    # Counters (processed == successful + failed + skipped)
    total = Column(Integer, nullable=False)
    processed = Column(Integer, nullable=False, default=0)
    successful = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)

    current_batch = Column(Integer, nullable=False, default=0)
    total_batches = Column(Integer, nullable=False, default=0)

    start_time = Column(DateTime(timezone=True), nullable=False)
    estimated_time_remaining = Column(Integer, nullable=True)  # seconds

    # Category-tagged config with the full ordered item list
    config = Column(JSON, nullable=False)

    errors = Column(JSON, nullable=False, default=list)
    reviews = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "BulkJobItem",
        back_populates="job",
        order_by="BulkJobItem.position",
        cascade="all, delete-orphan",
    )


class BulkJobItem(Base):
    __tablename__ = "bulk_job_items"
    __table_args__ = (UniqueConstraint("job_id", "name", name="uq_bulk_job_items_job_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("bulk_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    name = Column(String(500), nullable=False)
    external_ref = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default=ITEM_PENDING)
    error = Column(Text, nullable=True)
    review_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    job = relationship("BulkJob", back_populates="items")
