"""
Persistence for jobs, extracted batches, load results, connectors and the
job timeline.

Each method opens its own short session: the orchestrator runs for minutes
and must not hold a transaction across HTTP calls.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol
import logging

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import NotFoundError
from ingestion.state import TERMINAL_STATUSES, ensure_transition
from models import (
    ExtractedBatch, Job, JobStatus, JobTimelineEvent, JobType, LoadResult, TenantConnector
)
from schemas.connectors import LoadOutcome

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Job persistence the orchestrator, service and scheduler depend on."""

    async def create_job(
        self,
        tenant_id: str,
        job_type: JobType,
        source_connector_id: str,
        destination_connector_id: Optional[str],
        entities: List[str],
        config: Dict[str, Any],
    ) -> Job: ...

    async def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[Job]: ...

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]: ...

    async def list_jobs(
        self, tenant_id: str, status: Optional[JobStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[Job]: ...

    async def count_jobs_by_status(self, tenant_id: Optional[str] = None) -> Dict[str, int]: ...

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        progress: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Job: ...

    async def update_progress(self, job_id: str, progress: Dict[str, Any]) -> None: ...

    async def get_connector(self, tenant_id: str, connector_id: str) -> Optional[TenantConnector]: ...

    async def create_batch(
        self, job: Job, entity_type: str, batch_number: int, source_system: str, records: List[Dict[str, Any]]
    ) -> ExtractedBatch: ...

    async def list_batches(self, job_id: str) -> List[ExtractedBatch]: ...

    async def set_transformed(self, batch_id: str, records: List[Dict[str, Any]]) -> None: ...

    async def delete_job_batches(self, job_id: str) -> int: ...

    async def delete_load_results(self, job_id: str) -> int: ...

    async def purge_expired_batches(self, now: Optional[datetime] = None) -> int: ...

    async def create_load_result(
        self, job_id: str, batch_id: str, destination_system: str, outcome: LoadOutcome
    ) -> LoadResult: ...

    async def add_timeline_event(
        self, job_id: str, tenant_id: str, event_type: str, message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None: ...

    async def list_timeline(self, job_id: str) -> List[JobTimelineEvent]: ...


class SqlAlchemyJobStore:
    """JobStore over an async SQLAlchemy session factory."""

    def __init__(self, session_maker: async_sessionmaker, retention_days: int = settings.DATA_RETENTION_DAYS):
        self.session_maker = session_maker
        self.retention_days = retention_days

    # ------------------------------------------------------------------
    # Connectors
    # ------------------------------------------------------------------

    async def create_connector(
        self, tenant_id: str, connector_type: str, name: str, config: Dict[str, Any]
    ) -> TenantConnector:
        connector = TenantConnector(
            tenant_id=tenant_id, connector_type=connector_type.upper(), name=name, config=config
        )
        async with self.session_maker() as session:
            session.add(connector)
            await session.commit()
        return connector

    async def get_connector(self, tenant_id: str, connector_id: str) -> Optional[TenantConnector]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TenantConnector).where(
                    TenantConnector.id == connector_id,
                    TenantConnector.tenant_id == tenant_id
                )
            )
            return result.scalar_one_or_none()

    async def list_connectors(self, tenant_id: str) -> List[TenantConnector]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TenantConnector)
                .where(TenantConnector.tenant_id == tenant_id)
                .order_by(TenantConnector.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self,
        tenant_id: str,
        job_type: JobType,
        source_connector_id: str,
        destination_connector_id: Optional[str],
        entities: List[str],
        config: Dict[str, Any],
    ) -> Job:
        job = Job(
            tenant_id=tenant_id,
            job_type=job_type,
            source_connector_id=source_connector_id,
            destination_connector_id=destination_connector_id,
            entities=entities,
            config=config,
            status=JobStatus.QUEUED,
            progress={"phase": "queued", "percentage": 0, "records_processed": 0, "message": "Job queued"},
        )
        async with self.session_maker() as session:
            session.add(job)
            await session.commit()
        return job

    async def get_job(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[Job]:
        async with self.session_maker() as session:
            query = select(Job).where(Job.id == job_id)
            if tenant_id is not None:
                query = query.where(Job.tenant_id == tenant_id)
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        async with self.session_maker() as session:
            result = await session.execute(select(Job.status).where(Job.id == job_id))
            return result.scalar_one_or_none()

    async def list_jobs(
        self, tenant_id: str, status: Optional[JobStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[Job]:
        async with self.session_maker() as session:
            query = select(Job).where(Job.tenant_id == tenant_id)
            if status is not None:
                query = query.where(Job.status == status)
            query = query.order_by(Job.created_at.desc()).limit(limit).offset(offset)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_jobs_by_status(self, tenant_id: Optional[str] = None) -> Dict[str, int]:
        async with self.session_maker() as session:
            query = select(Job.status, func.count(Job.id)).group_by(Job.status)
            if tenant_id is not None:
                query = query.where(Job.tenant_id == tenant_id)
            result = await session.execute(query)
            return {status.value: count for status, count in result.all()}

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        progress: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Job:
        """
        Move a job to ``target`` if the state machine allows it.

        The row is locked for the read-check-write so a concurrent cancel
        cannot be overwritten. Re-entering the same terminal status is a
        no-op.

        Raises:
            NotFoundError: Unknown job id
            InvalidTransitionError: Edge not allowed from the current status
        """
        async with self.session_maker() as session:
            job = await session.get(Job, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})

            if job.status == target and target in TERMINAL_STATUSES:
                return job

            ensure_transition(job_id, job.status, target)

            now = datetime.utcnow()
            previous = job.status
            job.status = target
            job.updated_at = now
            if target in (JobStatus.EXTRACTING, JobStatus.LOADING) and job.started_at is None:
                job.started_at = now
            if target in TERMINAL_STATUSES or (
                target == JobStatus.DATA_READY and job.job_type == JobType.EXTRACTION
            ):
                job.completed_at = now
            if progress is not None:
                job.progress = progress
            if error_code is not None:
                job.error_code = error_code
                job.error_message = error_message

            await session.commit()

        logger.info(f"Job {job_id}: {previous.value} -> {target.value}")
        return job

    async def update_progress(self, job_id: str, progress: Dict[str, Any]) -> None:
        async with self.session_maker() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return
            job.progress = progress
            job.updated_at = datetime.utcnow()
            await session.commit()

    # ------------------------------------------------------------------
    # Batches / load results
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        job: Job,
        entity_type: str,
        batch_number: int,
        source_system: str,
        records: List[Dict[str, Any]],
    ) -> ExtractedBatch:
        now = datetime.utcnow()
        batch = ExtractedBatch(
            job_id=job.id,
            tenant_id=job.tenant_id,
            entity_type=entity_type,
            batch_number=batch_number,
            source_system=source_system,
            raw_records=records,
            record_count=len(records),
            extraction_timestamp=now,
            expires_at=now + timedelta(days=self.retention_days),
        )
        async with self.session_maker() as session:
            session.add(batch)
            await session.commit()
        return batch

    async def list_batches(self, job_id: str) -> List[ExtractedBatch]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(ExtractedBatch)
                .where(ExtractedBatch.job_id == job_id)
                .order_by(ExtractedBatch.batch_number)
            )
            return list(result.scalars().all())

    async def set_transformed(self, batch_id: str, records: List[Dict[str, Any]]) -> None:
        async with self.session_maker() as session:
            batch = await session.get(ExtractedBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found", context={"batch_id": batch_id})
            batch.transformed_records = records
            await session.commit()

    async def delete_load_results(self, job_id: str) -> int:
        async with self.session_maker() as session:
            result = await session.execute(delete(LoadResult).where(LoadResult.job_id == job_id))
            await session.commit()
            return result.rowcount or 0

    async def delete_job_batches(self, job_id: str) -> int:
        """Discard a previous attempt's batches (and any load results on them)."""
        async with self.session_maker() as session:
            batch_ids = select(ExtractedBatch.id).where(ExtractedBatch.job_id == job_id)
            await session.execute(delete(LoadResult).where(LoadResult.batch_id.in_(batch_ids)))
            result = await session.execute(delete(ExtractedBatch).where(ExtractedBatch.job_id == job_id))
            await session.commit()
            return result.rowcount or 0

    async def create_load_result(
        self, job_id: str, batch_id: str, destination_system: str, outcome: LoadOutcome
    ) -> LoadResult:
        load_result = LoadResult(
            job_id=job_id,
            batch_id=batch_id,
            destination_system=destination_system,
            success_count=outcome.success_count,
            failure_count=outcome.failure_count,
            errors=[error.model_dump() for error in outcome.errors],
            loaded_at=datetime.utcnow(),
        )
        async with self.session_maker() as session:
            session.add(load_result)
            await session.commit()
        return load_result

    async def list_load_results(self, job_id: str) -> List[LoadResult]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(LoadResult)
                .join(ExtractedBatch, LoadResult.batch_id == ExtractedBatch.id)
                .where(LoadResult.job_id == job_id)
                .order_by(ExtractedBatch.batch_number)
            )
            return list(result.scalars().all())

    async def purge_expired_batches(self, now: Optional[datetime] = None) -> int:
        """Retention: delete batches (and their load results) past expires_at."""
        now = now or datetime.utcnow()
        async with self.session_maker() as session:
            expired_ids = select(ExtractedBatch.id).where(ExtractedBatch.expires_at < now)
            await session.execute(delete(LoadResult).where(LoadResult.batch_id.in_(expired_ids)))
            result = await session.execute(delete(ExtractedBatch).where(ExtractedBatch.expires_at < now))
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Timeline
    # ------------------------------------------------------------------

    async def add_timeline_event(
        self,
        job_id: str,
        tenant_id: str,
        event_type: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = JobTimelineEvent(
            job_id=job_id,
            tenant_id=tenant_id,
            event_type=event_type,
            message=message,
            event_metadata=metadata,
            timestamp=datetime.utcnow(),
        )
        async with self.session_maker() as session:
            session.add(event)
            await session.commit()

    async def list_timeline(self, job_id: str) -> List[JobTimelineEvent]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(JobTimelineEvent)
                .where(JobTimelineEvent.job_id == job_id)
                .order_by(JobTimelineEvent.timestamp, JobTimelineEvent.id)
            )
            return list(result.scalars().all())
