from sqlalchemy import Column, String, Enum, DateTime, Text, Index
from datetime import datetime
from models.base import Base, JSONType, JobType, JobStatus, new_uuid


class Job(Base):
    """
    One extraction, loading or migration run for a tenant.

    Purpose:
    - Durable source of truth for job status (the cancellation oracle's
      last resort)
    - Progress snapshot for polling clients
    - Failure code and message once the job is FAILED
    """
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(100), nullable=False, index=True)

    job_type = Column(Enum(JobType), nullable=False)
    source_connector_id = Column(String(36), nullable=False)
    destination_connector_id = Column(String(36), nullable=True)

    # Ordered entity types, e.g. ["tickets", "users"]
    entities = Column(JSONType, nullable=False)
    # batchSize, startDate, endDate, maxRecords, includeDetails, detailBatchSize, sourceJobId
    config = Column(JSONType, nullable=False, default=dict)

    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)
    # phase, percentage, current_entity, records_processed, total_records, message
    progress = Column(JSONType, nullable=True)

    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_job_tenant_status", "tenant_id", "status"),
        Index("idx_job_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self):
        return f"<Job(id={self.id}, type={self.job_type}, status={self.status})>"
