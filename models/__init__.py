"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base, JSON column type and shared enums
    job: Job records (status, progress, failure details)
    extracted_batch: Per-entity raw and transformed records with expiry
    load_result: Per-batch load outcome with structured record errors
    connector: Tenant connector configurations
    timeline: Job timeline events
    queue_message: Durable job queue messages

Relationships:
    - Job -> ExtractedBatch (one batch per entity type per attempt)
    - ExtractedBatch -> LoadResult (one result per load attempt)
"""

from models.base import (
    Base, JobType, JobStatus, ConnectorType, ConnectorStatus, QueueMessageStatus
)
from models.job import Job
from models.extracted_batch import ExtractedBatch
from models.load_result import LoadResult
from models.connector import TenantConnector
from models.timeline import JobTimelineEvent
from models.queue_message import QueueMessage

__all__ = [
    "Base",
    "JobType",
    "JobStatus",
    "ConnectorType",
    "ConnectorStatus",
    "QueueMessageStatus",
    "Job",
    "ExtractedBatch",
    "LoadResult",
    "TenantConnector",
    "JobTimelineEvent",
    "QueueMessage",
]
