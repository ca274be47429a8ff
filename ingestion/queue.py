"""
Durable job queue on the relational store.

At-least-once delivery with leases: a claimed message is invisible to other
workers until its lease expires. A worker that dies mid-job simply stops
renewing, and the message is claimed again (attempts + 1). Failed deliveries
are retried with exponential backoff until max_attempts; a message found
cancelled is never retried.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from models import QueueMessage, QueueMessageStatus

logger = logging.getLogger(__name__)


@dataclass
class JobMessage:
    """A claimed delivery of a job-start message."""

    job_id: str
    tenant_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    max_attempts: int = 3
    cancelled: bool = False
    lease_owner: Optional[str] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    @property
    def is_stalled(self) -> bool:
        """Redelivered beyond its attempt budget (only possible after lease expiry)."""
        return self.attempts > self.max_attempts


class SqlAlchemyJobQueue:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        backoff_seconds: float = settings.QUEUE_BACKOFF_SECONDS,
        lease_seconds: int = settings.QUEUE_LEASE_SECONDS,
    ):
        self.session_maker = session_maker
        self.backoff_seconds = backoff_seconds
        self.lease_seconds = lease_seconds

    async def enqueue(
        self,
        job_id: str,
        tenant_id: str,
        payload: Dict[str, Any],
        max_attempts: int = settings.QUEUE_MAX_ATTEMPTS,
    ) -> None:
        now = datetime.utcnow()
        async with self.session_maker() as session:
            session.add(QueueMessage(
                id=job_id,
                tenant_id=tenant_id,
                payload=payload,
                status=QueueMessageStatus.WAITING,
                attempts=0,
                max_attempts=max(1, max_attempts),
                available_at=now,
                cancel_requested=False,
                created_at=now,
                updated_at=now,
            ))
            await session.commit()
        logger.info(f"Enqueued job {job_id} for tenant {tenant_id}")

    async def claim(self, worker_id: str) -> Optional[JobMessage]:
        """Claim the oldest runnable message, or a message whose lease expired."""
        now = datetime.utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                select(QueueMessage)
                .where(or_(
                    (QueueMessage.status == QueueMessageStatus.WAITING) & (QueueMessage.available_at <= now),
                    (QueueMessage.status == QueueMessageStatus.ACTIVE) & (QueueMessage.lease_expires_at < now),
                ))
                .order_by(QueueMessage.available_at, QueueMessage.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None

            if row.status == QueueMessageStatus.ACTIVE:
                logger.warning(f"Lease of job {row.id} held by {row.lease_owner} expired; redelivering")

            row.status = QueueMessageStatus.ACTIVE
            row.attempts += 1
            row.lease_owner = worker_id
            row.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
            row.updated_at = now
            await session.commit()

            return JobMessage(
                job_id=row.id,
                tenant_id=row.tenant_id,
                payload=dict(row.payload or {}),
                attempts=row.attempts,
                max_attempts=row.max_attempts,
                cancelled=row.cancel_requested,
                lease_owner=worker_id,
            )

    async def renew(self, message: JobMessage) -> bool:
        """
        Extend the lease and pick up a cancellation marker.

        Returns the message's ``cancelled`` flag after the refresh.
        """
        now = datetime.utcnow()
        async with self.session_maker() as session:
            row = await session.get(QueueMessage, message.job_id)
            if row is None:
                return message.cancelled
            if row.lease_owner == message.lease_owner and row.status == QueueMessageStatus.ACTIVE:
                row.lease_expires_at = now + timedelta(seconds=self.lease_seconds)
                row.updated_at = now
                await session.commit()
            if row.cancel_requested:
                message.cancelled = True
        return message.cancelled

    async def complete(self, message: JobMessage) -> None:
        await self._finish(message, QueueMessageStatus.COMPLETED, None)

    async def fail(self, message: JobMessage, error: str, retriable: bool = True) -> bool:
        """
        Record a failed delivery.

        Returns True if the message was scheduled for another attempt.
        """
        now = datetime.utcnow()
        async with self.session_maker() as session:
            row = await session.get(QueueMessage, message.job_id)
            if row is None:
                return False

            retry = (
                retriable
                and not row.cancel_requested
                and row.attempts < row.max_attempts
            )
            row.last_error = error[:2000]
            row.lease_owner = None
            row.lease_expires_at = None
            row.updated_at = now
            if retry:
                delay = self.backoff_seconds * (2 ** (row.attempts - 1))
                row.status = QueueMessageStatus.WAITING
                row.available_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job {row.id} attempt {row.attempts}/{row.max_attempts} failed; retrying in {delay}s"
                )
            else:
                row.status = QueueMessageStatus.FAILED
                logger.error(f"Job {row.id} failed permanently after {row.attempts} attempts: {error}")
            await session.commit()
            return retry

    async def signal_cancel(self, job_id: str) -> bool:
        """
        Mark a message cancelled.

        A waiting message is dropped outright; an active one keeps running
        until its worker notices the marker on the next lease renewal.
        """
        now = datetime.utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                update(QueueMessage)
                .where(QueueMessage.id == job_id)
                .values(cancel_requested=True, updated_at=now)
            )
            await session.execute(
                update(QueueMessage)
                .where(QueueMessage.id == job_id, QueueMessage.status == QueueMessageStatus.WAITING)
                .values(status=QueueMessageStatus.FAILED, last_error="Job cancelled by user")
            )
            await session.commit()
            return bool(result.rowcount)

    async def get(self, job_id: str) -> Optional[QueueMessage]:
        async with self.session_maker() as session:
            return await session.get(QueueMessage, job_id)

    async def _finish(self, message: JobMessage, status: QueueMessageStatus, error: Optional[str]) -> None:
        now = datetime.utcnow()
        async with self.session_maker() as session:
            await session.execute(
                update(QueueMessage)
                .where(QueueMessage.id == message.job_id)
                .values(
                    status=status,
                    last_error=error,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
            )
            await session.commit()
