from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from datetime import datetime
from models.base import Base, JSONType, new_uuid


class LoadResult(Base):
    """Outcome of loading one ExtractedBatch into the destination."""
    __tablename__ = "load_results"

    id = Column(String(36), primary_key=True, default=new_uuid)
    # The job that performed the load (a LOADING job loads another job's batches)
    job_id = Column(String(36), nullable=False, index=True)
    batch_id = Column(
        String(36), ForeignKey("extracted_batches.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    destination_system = Column(String(50), nullable=False)

    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    # [{record_index, external_id, error, field, value}]
    errors = Column(JSONType, nullable=False, default=list)

    loaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
