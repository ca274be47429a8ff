"""
Health check endpoint with database, Redis and job status
"""

from fastapi import APIRouter, Depends
import logging

from api.dependencies import get_ephemeral_store, get_job_store, get_session_maker
from core.database import check_connection
from core.redis import EphemeralStore
from ingestion.store import JobStore
from models import JobStatus
from schemas.api import HealthCheckResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.EXTRACTING, JobStatus.DATA_READY, JobStatus.LOADING)


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    session_maker=Depends(get_session_maker),
    store: JobStore = Depends(get_job_store),
    ephemeral: EphemeralStore = Depends(get_ephemeral_store),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Redis connectivity status (the rate limiter fails open without it)
    - Counts of active and failed jobs across tenants
    """
    db_connected = await check_connection(session_maker)
    redis_connected = await ephemeral.ping()

    active_jobs = failed_jobs = 0
    if db_connected:
        try:
            counts = await store.count_jobs_by_status()
            active_jobs = sum(counts.get(status.value, 0) for status in ACTIVE_STATUSES)
            failed_jobs = counts.get(JobStatus.FAILED.value, 0)
        except Exception as e:
            logger.error(f"Failed to count jobs: {str(e)}")

    return HealthCheckResponse(
        database_connected=db_connected,
        redis_connected=redis_connected,
        active_jobs=active_jobs,
        failed_jobs=failed_jobs,
    )
