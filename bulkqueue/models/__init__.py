# Database models package
from bulkqueue.models.bulk_job import BulkJob, BulkJobItem

__all__ = [
    "BulkJob",
    "BulkJobItem",
]
