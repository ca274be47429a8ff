# ============================================================================
# File: ingestion/orchestrator.py
# Description: Drives one job through extract -> transform -> load
# ============================================================================
"""
Job Orchestrator - runs a job's state machine for one queue delivery.

Guarantees:
- Persisted status changes at every phase boundary before the next phase
- Cancellation is checked before each entity, page, detail batch and load batch
- Unrecoverable errors leave the job FAILED with a code and message;
  recoverable ones are re-raised for queue redelivery
- A redelivered attempt restarts the current phase from scratch
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    BridgeException,
    ExtractionError,
    InvalidTransitionError,
    JobCancelledError,
    JobStalledError,
    NotFoundError,
    TransformationError,
    ValidationError,
)
from ingestion.cancellation import CANCELLED_STATUSES, CancellationOracle, CancellationToken
from ingestion.connectors.base import BaseConnector, ProgressCallback
from ingestion.connectors.registry import ConnectorRegistry
from ingestion.progress import ProgressEmitter
from ingestion.queue import JobMessage
from ingestion.rate_limiter import RateLimiter
from ingestion.state import is_finished
from ingestion.store import JobStore
from models import ConnectorStatus, ExtractedBatch, Job, JobStatus, JobType
from schemas.api import JobConfig
from schemas.connectors import ExtractionOptions, LoadOutcome
from schemas.events import ProgressData, ProgressEvent, ProgressEventType

logger = logging.getLogger(__name__)

# Overall percentage range of each phase, per job type
PHASE_RANGES: Dict[JobType, Dict[str, Tuple[int, int]]] = {
    JobType.EXTRACTION: {"extract": (5, 80), "transform": (80, 95)},
    JobType.MIGRATION: {"extract": (5, 45), "transform": (45, 55), "load": (55, 100)},
    JobType.LOADING: {"load": (10, 100)},
}

CANCELLED_MESSAGE = "Job cancelled by user"


@dataclass
class JobRunResult:
    job_id: str
    status: JobStatus
    records_extracted: int = 0
    records_loaded: int = 0
    records_failed: int = 0


class JobOrchestrator:
    """
    Production job orchestrator.

    Responsibilities:
    - Own the job's status while a delivery is being processed
    - Build connectors for the job's source and destination
    - Persist batches, transformed records and load results
    - Report progress to the store, the emitter and the timeline
    """

    def __init__(
        self,
        store: JobStore,
        registry: ConnectorRegistry,
        rate_limiter: RateLimiter,
        oracle: CancellationOracle,
        emitter: ProgressEmitter,
        connector_options: Optional[Dict[str, Any]] = None,
        default_batch_size: int = settings.DEFAULT_BATCH_SIZE,
    ):
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.oracle = oracle
        self.emitter = emitter
        # Extra connector constructor arguments (transport, sleep, delays)
        self.connector_options = connector_options or {}
        self.default_batch_size = default_batch_size

    async def run(self, message: JobMessage) -> JobRunResult:
        """
        Process one delivery of a job.

        Raises:
            JobCancelledError: The job was cancelled; it is left CANCELLED
            BridgeException: Any failure; the job is FAILED if the error is
                non-retriable or this was the final attempt
        """
        job = await self.store.get_job(message.job_id)
        if job is None:
            raise NotFoundError(f"Job {message.job_id} not found", context={"job_id": message.job_id})

        if is_finished(job.job_type, job.status):
            logger.info(f"Job {job.id} already {job.status.value}; nothing to do")
            return JobRunResult(job_id=job.id, status=job.status)

        logger.info(
            f"Running {job.job_type.value} job {job.id} for tenant {job.tenant_id} "
            f"(attempt {message.attempts}/{message.max_attempts}, status {job.status.value})"
        )
        token = self.oracle.token(job.id, message)

        try:
            return await self._dispatch(job, token)

        except JobCancelledError:
            await self._mark_cancelled(job)
            raise

        except BridgeException as e:
            await self._handle_failure(job, e, message)
            raise

        except Exception as e:
            error = BridgeException(
                f"Unexpected error: {e}",
                context={"job_id": job.id},
                original_exception=e
            )
            logger.exception(f"Unexpected error in job {job.id}")
            await self._handle_failure(job, error, message)
            raise error from e

        finally:
            self.oracle.forget(job.id)

    async def fail_stalled(self, message: JobMessage) -> None:
        """Fail a job whose message outlived its attempt budget."""
        job = await self.store.get_job(message.job_id)
        if job is None or is_finished(job.job_type, job.status):
            return
        error = JobStalledError(
            f"Job stalled: delivered {message.attempts} times without finishing",
            context={"job_id": job.id, "max_attempts": message.max_attempts}
        )
        await self._handle_failure(job, error, message)

    # ------------------------------------------------------------------
    # Phase sequencing
    # ------------------------------------------------------------------

    async def _dispatch(self, job: Job, token: CancellationToken) -> JobRunResult:
        config = JobConfig.model_validate(job.config or {})
        result = JobRunResult(job_id=job.id, status=job.status)

        if job.job_type == JobType.LOADING:
            if not config.source_job_id:
                raise ValidationError("LOADING jobs need config.sourceJobId", context={"job_id": job.id})
            result.records_loaded, result.records_failed = await self._load_phase(
                job, token, config.source_job_id
            )
            await self._finish(job, result)
            return result

        # --------------------------------------------------
        # PHASE 1 + 2: EXTRACTION AND TRANSFORMATION
        # --------------------------------------------------
        if job.status in (JobStatus.QUEUED, JobStatus.EXTRACTING):
            result.records_extracted = await self._extract_phase(job, token, config)
            await self._transform_phase(job, token)

            low, high = PHASE_RANGES[job.job_type]["transform"]
            await self._transition(
                job, JobStatus.DATA_READY,
                phase="data_ready", percentage=high,
                message=f"Extraction completed: {result.records_extracted} records ready",
                records_processed=result.records_extracted,
            )

            if job.job_type == JobType.EXTRACTION:
                result.status = job.status
                await self._emit(
                    job, ProgressEventType.COMPLETE, 100, f"Extracted {result.records_extracted} records",
                    phase="data_ready", records_processed=result.records_extracted
                )
                return result

        # --------------------------------------------------
        # PHASE 3: LOADING (migration)
        # --------------------------------------------------
        result.records_loaded, result.records_failed = await self._load_phase(job, token, job.id)
        await self._finish(job, result)
        return result

    async def _finish(self, job: Job, result: JobRunResult) -> None:
        message = f"Loading completed: {result.records_loaded} records loaded, {result.records_failed} errors"
        await self._transition(
            job, JobStatus.COMPLETED,
            phase="completed", percentage=100, message=message,
            records_processed=result.records_loaded + result.records_failed,
        )
        result.status = job.status
        await self._emit(
            job, ProgressEventType.COMPLETE, 100, message,
            phase="completed", records_processed=result.records_loaded + result.records_failed
        )
        await self._timeline(job, "completion", message, {
            "records_loaded": result.records_loaded, "records_failed": result.records_failed
        })

    async def _extract_phase(self, job: Job, token: CancellationToken, config: JobConfig) -> int:
        low, high = PHASE_RANGES[job.job_type]["extract"]
        await self._transition(
            job, JobStatus.EXTRACTING, phase="extracting", percentage=low, message="Starting data extraction"
        )

        discarded = await self.store.delete_job_batches(job.id)
        if discarded:
            logger.info(f"Job {job.id}: discarded {discarded} batches from a previous attempt")

        total = 0
        entity_count = len(job.entities)
        connector = await self._connector(job, job.source_connector_id, token)

        async with connector:
            if not await connector.authenticate():
                raise AuthenticationError(
                    "Failed to authenticate with source connector",
                    context={"connector_id": job.source_connector_id}
                )

            for index, entity in enumerate(job.entities):
                await token.raise_if_cancelled()

                entity_low = low + (high - low) * index / entity_count
                entity_high = low + (high - low) * (index + 1) / entity_count
                await self._report(
                    job, "extracting", entity_low, f"Extracting {entity}",
                    current_entity=entity, records_processed=total
                )

                options = self._extraction_options(config, connector)
                callback = self._page_callback(job, token, entity, total, entity_low, entity_high)
                try:
                    data = await connector.extract_with_progress(entity, options, callback)
                except JobCancelledError:
                    raise
                except BridgeException as e:
                    e.message = f"Failed to extract {entity}: {e.message}"
                    e.context["entity_type"] = entity
                    raise
                except Exception as e:
                    raise ExtractionError(
                        f"Failed to extract {entity}: {e}",
                        context={"entity_type": entity, "job_id": job.id},
                        original_exception=e
                    )

                await self.store.create_batch(
                    job, entity, index + 1, connector.connector_type.lower(), data.records
                )
                total += len(data.records)

                await self._report(
                    job, "extracting", entity_high, f"Extracted {len(data.records)} {entity}",
                    current_entity=entity, records_processed=total
                )
                await self._timeline(job, "progress_update", f"Extracted {len(data.records)} {entity}", {
                    "entity_type": entity, "records": len(data.records)
                })

        logger.info(f"Job {job.id}: extracted {total} records across {entity_count} entity types")
        return total

    async def _transform_phase(self, job: Job, token: CancellationToken) -> None:
        low, high = PHASE_RANGES[job.job_type]["transform"]
        batches = await self.store.list_batches(job.id)
        connector = await self._connector(job, job.source_connector_id, token)

        async with connector:
            for index, batch in enumerate(batches):
                await token.raise_if_cancelled()
                try:
                    transformed = connector.transform_for_extraction(batch.entity_type, batch.raw_records)
                except Exception as e:
                    raise TransformationError(
                        f"Failed to transform {batch.entity_type}: {e}",
                        context={"job_id": job.id, "batch_id": batch.id},
                        original_exception=e
                    )
                await self.store.set_transformed(batch.id, transformed)
                await self._report(
                    job, "transforming", low + (high - low) * (index + 1) / max(len(batches), 1),
                    f"Transformed {len(transformed)} {batch.entity_type}",
                    current_entity=batch.entity_type
                )

    async def _load_phase(self, job: Job, token: CancellationToken, batches_job_id: str) -> Tuple[int, int]:
        low, high = PHASE_RANGES[job.job_type]["load"]

        await token.raise_if_cancelled()
        await self._transition(
            job, JobStatus.LOADING, phase="loading", percentage=low, message="Starting data loading"
        )

        await self.store.delete_load_results(job.id)
        batches = await self.store.list_batches(batches_job_id)
        total_records = sum(batch.record_count for batch in batches)

        loaded = failed = 0
        destination = await self._connector(job, job.destination_connector_id, token)

        async with destination:
            if not await destination.authenticate():
                raise AuthenticationError(
                    "Failed to authenticate with destination connector",
                    context={"connector_id": job.destination_connector_id}
                )

            for index, batch in enumerate(batches):
                await token.raise_if_cancelled()

                outcome = await self._load_batch(destination, batch)
                await self.store.create_load_result(
                    job.id, batch.id, destination.connector_type.lower(), outcome
                )
                loaded += outcome.success_count
                failed += outcome.failure_count

                await self._report(
                    job, "loading", low + (high - low) * (index + 1) / max(len(batches), 1),
                    f"Loaded {outcome.success_count} {batch.entity_type} ({outcome.failure_count} failed)",
                    current_entity=batch.entity_type,
                    records_processed=loaded + failed,
                    total_records=total_records,
                )

        return loaded, failed

    async def _load_batch(self, destination: BaseConnector, batch: ExtractedBatch) -> LoadOutcome:
        """
        Map, validate and load one batch.

        Records failing validation are counted as failures and never sent;
        indexes in the returned errors refer to positions in the batch.
        """
        if not destination.supports_entity(batch.entity_type):
            raise ValidationError(
                f"{destination.connector_type} cannot load entity type '{batch.entity_type}'",
                context={"batch_id": batch.id}
            )
        if batch.transformed_records is None:
            raise ValidationError(
                f"Batch {batch.id} ({batch.entity_type}) has not been transformed",
                context={"batch_id": batch.id}
            )

        try:
            payloads = destination.transform_for_load(batch.entity_type, batch.transformed_records)
        except Exception as e:
            raise TransformationError(
                f"Failed to map {batch.entity_type} for {destination.connector_type}: {e}",
                context={"batch_id": batch.id},
                original_exception=e
            )

        validation_errors = destination.validate_for_load(batch.entity_type, payloads)
        invalid = {error.record_index for error in validation_errors}
        valid_indexes = [i for i in range(len(payloads)) if i not in invalid]

        result = await destination.load_batch(batch.entity_type, [payloads[i] for i in valid_indexes])

        errors = list(validation_errors) + [
            error.model_copy(update={"record_index": valid_indexes[error.record_index]})
            for error in result.errors
        ]
        return LoadOutcome(
            success_count=result.success_count,
            failure_count=result.failure_count + len(invalid),
            errors=sorted(errors, key=lambda error: error.record_index),
            created_ids=result.created_ids,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _connector(self, job: Job, connector_id: Optional[str], token: CancellationToken) -> BaseConnector:
        record = await self.store.get_connector(job.tenant_id, connector_id) if connector_id else None
        if record is None:
            raise NotFoundError(
                f"Connector {connector_id} not found for tenant {job.tenant_id}",
                context={"job_id": job.id, "connector_id": connector_id}
            )
        if record.status != ConnectorStatus.ACTIVE:
            raise ValidationError(
                f"Connector {record.name} is {record.status.value}",
                context={"connector_id": record.id}
            )
        return self.registry.create(
            record.connector_type,
            record.config,
            connector_id=record.id,
            tenant_id=job.tenant_id,
            rate_limiter=self.rate_limiter,
            cancellation=token,
            **self.connector_options
        )

    def _extraction_options(self, config: JobConfig, connector: BaseConnector) -> ExtractionOptions:
        batch_size = config.batch_size or self.default_batch_size
        return ExtractionOptions(
            batch_size=min(batch_size, connector.capabilities.max_batch_size),
            start_date=config.start_date,
            end_date=config.end_date,
            max_records=config.max_records,
            include_details=config.include_details,
            detail_batch_size=config.detail_batch_size,
            filters=config.filters,
        )

    def _page_callback(
        self,
        job: Job,
        token: CancellationToken,
        entity: str,
        records_before: int,
        low: float,
        high: float,
    ) -> ProgressCallback:
        async def on_page(records_so_far: int, total_estimate: Optional[int], page_number: int) -> None:
            await token.raise_if_cancelled()
            if total_estimate:
                fraction = min(records_so_far / total_estimate, 1.0)
            else:
                # Unknown total: approach the end of the range page by page
                fraction = 1 - 1 / (page_number + 1)
            await self._report(
                job, "extracting", low + (high - low) * fraction,
                f"Extracted {records_so_far} {entity} (page {page_number})",
                current_entity=entity,
                records_processed=records_before + records_so_far,
                total_records=total_estimate,
            )
        return on_page

    async def _transition(
        self,
        job: Job,
        target: JobStatus,
        phase: str,
        percentage: float,
        message: str,
        records_processed: Optional[int] = None,
    ) -> None:
        progress = self._progress(phase, percentage, message, records_processed=records_processed)
        try:
            updated = await self.store.transition(job.id, target, progress=progress)
        except InvalidTransitionError:
            if await self.store.get_job_status(job.id) in CANCELLED_STATUSES:
                raise JobCancelledError(CANCELLED_MESSAGE, context={"job_id": job.id})
            raise

        job.status = updated.status
        job.progress = progress
        await self._emit(job, ProgressEventType.STATUS, percentage, message, phase=phase,
                         records_processed=records_processed)
        await self._timeline(job, "status_change", f"Status changed to {target.value}: {message}")

    async def _report(
        self,
        job: Job,
        phase: str,
        percentage: float,
        message: str,
        current_entity: Optional[str] = None,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
    ) -> None:
        progress = self._progress(phase, percentage, message, current_entity, records_processed, total_records)
        job.progress = progress
        await self.store.update_progress(job.id, progress)
        await self._emit(
            job, ProgressEventType.PROGRESS, percentage, message, phase=phase,
            current_entity=current_entity, records_processed=records_processed, total_records=total_records
        )

    @staticmethod
    def _progress(
        phase: str,
        percentage: float,
        message: str,
        current_entity: Optional[str] = None,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
    ) -> Dict[str, Any]:
        return {
            "phase": phase,
            "percentage": int(percentage),
            "current_entity": current_entity,
            "records_processed": records_processed or 0,
            "total_records": total_records,
            "message": message,
        }

    async def _emit(
        self,
        job: Job,
        event_type: ProgressEventType,
        percentage: float,
        message: str,
        phase: Optional[str] = None,
        current_entity: Optional[str] = None,
        records_processed: Optional[int] = None,
        total_records: Optional[int] = None,
    ) -> None:
        event = ProgressEvent(
            job_id=job.id,
            tenant_id=job.tenant_id,
            type=event_type,
            data=ProgressData(
                progress=int(percentage),
                status=job.status.value,
                message=message,
                phase=phase,
                current_entity=current_entity,
                records_processed=records_processed,
                total_records=total_records,
            ),
        )
        try:
            await self.emitter.emit(event)
        except Exception as e:
            logger.debug(f"Progress emit failed for job {job.id}: {e}")

    async def _timeline(
        self, job: Job, event_type: str, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            await self.store.add_timeline_event(job.id, job.tenant_id, event_type, message, metadata)
        except Exception as e:
            logger.warning(f"Failed to write timeline event for job {job.id}: {e}")

    async def _mark_cancelled(self, job: Job) -> None:
        logger.info(f"Job {job.id} cancelled during {job.status.value}")
        try:
            updated = await self.store.transition(
                job.id, JobStatus.CANCELLED,
                error_code=JobCancelledError.code, error_message=CANCELLED_MESSAGE
            )
            job.status = updated.status
        except InvalidTransitionError:
            job.status = await self.store.get_job_status(job.id) or job.status
        except Exception as e:
            logger.error(f"Failed to persist cancellation of job {job.id}: {e}")
            return

        await self._emit(job, ProgressEventType.STATUS, 0, CANCELLED_MESSAGE, phase="cancelled")
        await self._timeline(job, "status_change", CANCELLED_MESSAGE)

    async def _handle_failure(self, job: Job, error: BridgeException, message: JobMessage) -> None:
        final = not error.retriable or message.is_final_attempt
        logger.error(
            f"Job {job.id} failed ({error.code}, attempt {message.attempts}/{message.max_attempts}, "
            f"{'final' if final else 'will retry'}): {error.message}"
        )

        try:
            if final:
                updated = await self.store.transition(
                    job.id, JobStatus.FAILED,
                    progress={**(job.progress or {}), "phase": "failed", "message": error.message},
                    error_code=error.code,
                    error_message=error.message,
                )
                job.status = updated.status
            else:
                await self.store.update_progress(job.id, {
                    **(job.progress or {}),
                    "message": f"Attempt {message.attempts} failed: {error.message}; retrying",
                })
        except InvalidTransitionError:
            logger.info(f"Job {job.id} already terminal; not marking FAILED")
            return
        except Exception as e:
            logger.error(f"Failed to record failure of job {job.id}: {e}")
            return

        await self._emit(
            job, ProgressEventType.ERROR, (job.progress or {}).get("percentage", 0), error.message,
            phase="failed" if final else (job.progress or {}).get("phase")
        )
        await self._timeline(job, "error", error.message, {
            "code": error.code, "attempt": message.attempts, "final": final
        })
