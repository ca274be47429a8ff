"""
Job submission, lookup and cancellation used by the HTTP API.
"""

from typing import Any, Dict, List, Optional
import logging

from core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from ingestion.cancellation import CancellationOracle
from ingestion.connectors.registry import ConnectorRegistry
from ingestion.queue import SqlAlchemyJobQueue
from ingestion.state import is_finished
from ingestion.store import JobStore
from models import ConnectorStatus, Job, JobStatus, JobTimelineEvent, JobType, TenantConnector
from schemas.api import CancelJobResponse, CreateJobRequest, JobStatsResponse

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled by user"

# A LOADING job may only read batches from jobs in these statuses
LOADABLE_SOURCE_STATUSES = (JobStatus.DATA_READY, JobStatus.COMPLETED)


class JobService:
    def __init__(
        self,
        store: JobStore,
        queue: SqlAlchemyJobQueue,
        oracle: CancellationOracle,
        registry: ConnectorRegistry,
    ):
        self.store = store
        self.queue = queue
        self.oracle = oracle
        self.registry = registry

    async def submit(self, tenant_id: str, request: CreateJobRequest) -> Job:
        """
        Validate a job request, persist it as QUEUED and enqueue it.

        Raises:
            NotFoundError: A connector or source job does not belong to the tenant
            ValidationError: Entity types or sourceJobId are unusable
        """
        source = await self._active_connector(tenant_id, request.source_connector_id, "source")
        self._check_entities(source, request.entities)

        if request.job_type in (JobType.LOADING, JobType.MIGRATION):
            destination = await self._active_connector(
                tenant_id, request.destination_connector_id, "destination"
            )
            self._check_entities(destination, request.entities)

        if request.job_type == JobType.LOADING:
            await self._check_source_job(tenant_id, request.config.source_job_id)

        job = await self.store.create_job(
            tenant_id=tenant_id,
            job_type=request.job_type,
            source_connector_id=request.source_connector_id,
            destination_connector_id=request.destination_connector_id,
            entities=request.entities,
            config=request.config.model_dump(by_alias=True, exclude_none=True, mode="json"),
        )
        await self.queue.enqueue(job.id, tenant_id, {"job_id": job.id, "job_type": job.job_type.value})
        await self.store.add_timeline_event(
            job.id, tenant_id, "status_change", "Job queued",
            {"job_type": job.job_type.value, "entities": job.entities}
        )

        logger.info(
            f"Submitted {job.job_type.value} job {job.id} for tenant {tenant_id}: "
            f"entities={job.entities}"
        )
        return job

    async def get(self, tenant_id: str, job_id: str) -> Job:
        job = await self.store.get_job(job_id, tenant_id=tenant_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", context={"job_id": job_id})
        return job

    async def list(
        self, tenant_id: str, status: Optional[JobStatus] = None, limit: int = 50, offset: int = 0
    ) -> List[Job]:
        return await self.store.list_jobs(tenant_id, status=status, limit=limit, offset=offset)

    async def stats(self, tenant_id: str) -> JobStatsResponse:
        by_status = await self.store.count_jobs_by_status(tenant_id)
        return JobStatsResponse(total=sum(by_status.values()), by_status=by_status)

    async def timeline(self, tenant_id: str, job_id: str) -> List[JobTimelineEvent]:
        await self.get(tenant_id, job_id)
        return await self.store.list_timeline(job_id)

    async def cancel(self, tenant_id: str, job_id: str) -> CancelJobResponse:
        """
        Cancel a job.

        The durable status change is what makes the cancel succeed; the
        ephemeral flag and queue signal only make the worker notice sooner.
        """
        job = await self.get(tenant_id, job_id)
        if is_finished(job.job_type, job.status):
            raise ValidationError(
                f"Job {job_id} is already {job.status.value} and cannot be cancelled",
                context={"job_id": job_id, "status": job.status.value}
            )

        try:
            job = await self.store.transition(
                job_id, JobStatus.CANCELLED,
                error_code="JOB_CANCELLED", error_message=CANCELLED_MESSAGE
            )
        except InvalidTransitionError as e:
            raise ValidationError(e.message, context={"job_id": job_id})

        if not await self.oracle.flag(job_id):
            logger.warning(f"Job {job_id} cancelled without ephemeral flag; worker will see the status")

        try:
            await self.queue.signal_cancel(job_id)
        except Exception as e:
            logger.warning(f"Failed to signal queue cancellation for job {job_id}: {e}")

        try:
            await self.store.add_timeline_event(job_id, tenant_id, "status_change", CANCELLED_MESSAGE)
        except Exception as e:
            logger.warning(f"Failed to write timeline event for job {job_id}: {e}")

        logger.info(f"Job {job_id} cancelled by tenant {tenant_id}")
        return CancelJobResponse(job_id=job_id, status=job.status, cancelled=True)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    async def _active_connector(
        self, tenant_id: str, connector_id: Optional[str], role: str
    ) -> TenantConnector:
        connector = await self.store.get_connector(tenant_id, connector_id) if connector_id else None
        if connector is None:
            raise NotFoundError(
                f"{role.capitalize()} connector {connector_id} not found",
                context={"connector_id": connector_id}
            )
        if connector.status != ConnectorStatus.ACTIVE:
            raise ValidationError(
                f"{role.capitalize()} connector {connector.name} is {connector.status.value}",
                context={"connector_id": connector_id}
            )
        if not self.registry.is_supported(connector.connector_type):
            raise ValidationError(
                f"Unsupported connector type: {connector.connector_type}",
                context={"connector_id": connector_id, "supported": self.registry.supported_types()}
            )
        return connector

    def _check_entities(self, connector: TenantConnector, entities: List[str]) -> None:
        supported = self.registry.get(connector.connector_type).supported_entities
        unsupported = [entity for entity in entities if entity not in supported]
        if unsupported:
            raise ValidationError(
                f"{connector.connector_type} does not support entity types: {', '.join(unsupported)}",
                context={"supported": supported}
            )

    async def _check_source_job(self, tenant_id: str, source_job_id: Optional[str]) -> None:
        if not source_job_id:
            raise ValidationError("LOADING jobs require config.sourceJobId")
        source_job = await self.store.get_job(source_job_id, tenant_id=tenant_id)
        if source_job is None:
            raise NotFoundError(f"Source job {source_job_id} not found", context={"job_id": source_job_id})
        if source_job.status not in LOADABLE_SOURCE_STATUSES:
            raise ValidationError(
                f"Source job {source_job_id} is {source_job.status.value}; "
                f"its data is not ready for loading",
                context={"job_id": source_job_id}
            )
