from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index
from datetime import datetime
from models.base import Base, JSONType, new_uuid


class ExtractedBatch(Base):
    """
    Raw and transformed records for one entity type of one job.

    raw_records are written at extraction time; transformed_records (the
    internal canonical form) stay NULL until the transform phase runs.
    Rows past expires_at are removed by the retention reaper.
    """
    __tablename__ = "extracted_batches"

    id = Column(String(36), primary_key=True, default=new_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    tenant_id = Column(String(100), nullable=False)

    entity_type = Column(String(50), nullable=False)
    batch_number = Column(Integer, nullable=False)
    source_system = Column(String(50), nullable=False)

    raw_records = Column(JSONType, nullable=False)
    transformed_records = Column(JSONType, nullable=True)
    record_count = Column(Integer, nullable=False, default=0)

    extraction_timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_batch_job", "job_id", "batch_number"),
        Index("idx_batch_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<ExtractedBatch(job={self.job_id}, entity={self.entity_type}, records={self.record_count})>"
