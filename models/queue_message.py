from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, Enum, Index
from datetime import datetime
from models.base import Base, JSONType, QueueMessageStatus


class QueueMessage(Base):
    """
    Durable job-start message with lease-based, at-least-once delivery.

    One row per job (id == job id). A claimed message holds a lease; if the
    worker dies the lease expires and the message becomes claimable again.
    """
    __tablename__ = "queue_messages"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(100), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)

    status = Column(Enum(QueueMessageStatus), nullable=False, default=QueueMessageStatus.WAITING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    lease_owner = Column(String(100), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    # Set by a cancellation request; read back by the worker's lease renewal
    cancel_requested = Column(Boolean, nullable=False, default=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_queue_claim", "status", "available_at"),
    )
