from sqlalchemy import Column, String, DateTime, Text, Index, BigInteger, Integer
from datetime import datetime
from models.base import Base, JSONType


class JobTimelineEvent(Base):
    """Audit trail of status changes, progress milestones and errors per job."""
    __tablename__ = "job_timeline_events"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    job_id = Column(String(36), nullable=False)
    tenant_id = Column(String(100), nullable=False)

    # status_change, progress_update, error, completion
    event_type = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    event_metadata = Column("metadata", JSONType, nullable=True)

    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_timeline_job_timestamp", "job_id", "timestamp"),
    )
