"""
Job endpoints: submit, list, inspect, follow and cancel jobs
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import List, Optional
import uuid
import logging

from api.dependencies import get_job_service, get_tenant_id
from ingestion.service import JobService
from models import JobStatus
from schemas.api import (
    APIResponse,
    CancelJobResponse,
    CreateJobRequest,
    JobProgressInfo,
    JobResponse,
    JobStatsResponse,
    TimelineEventResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


@router.post("", response_model=APIResponse[JobResponse], status_code=201)
async def create_job(
    request: Request,
    body: CreateJobRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    """
    Submit a job.

    The job is persisted as QUEUED and enqueued; a worker picks it up.
    """
    request_id = _request_id(request)
    logger.info(
        f"[{request_id}] POST /jobs - tenant={tenant_id}, type={body.job_type.value}, "
        f"entities={body.entities}"
    )
    job = await service.submit(tenant_id, body)
    return APIResponse(
        request_id=request_id,
        data=JobResponse.model_validate(job),
        message="Job queued",
    )


@router.get("", response_model=APIResponse[List[JobResponse]])
async def list_jobs(
    request: Request,
    status: Optional[JobStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum jobs to return"),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    jobs = await service.list(tenant_id, status=status, limit=limit, offset=offset)
    return APIResponse(
        request_id=_request_id(request),
        data=[JobResponse.model_validate(job) for job in jobs],
    )


@router.get("/stats", response_model=APIResponse[JobStatsResponse])
async def job_stats(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    """Job counts by status for the tenant"""
    return APIResponse(request_id=_request_id(request), data=await service.stats(tenant_id))


@router.get("/{job_id}", response_model=APIResponse[JobResponse])
async def get_job(
    request: Request,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    job = await service.get(tenant_id, job_id)
    return APIResponse(request_id=_request_id(request), data=JobResponse.model_validate(job))


@router.get("/{job_id}/progress", response_model=APIResponse[JobProgressInfo])
async def get_job_progress(
    request: Request,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    job = await service.get(tenant_id, job_id)
    return APIResponse(
        request_id=_request_id(request),
        data=JobProgressInfo.model_validate(job.progress or {}),
        message=job.status.value,
    )


@router.get("/{job_id}/timeline", response_model=APIResponse[List[TimelineEventResponse]])
async def get_job_timeline(
    request: Request,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    events = await service.timeline(tenant_id, job_id)
    return APIResponse(
        request_id=_request_id(request),
        data=[TimelineEventResponse.model_validate(event) for event in events],
    )


@router.post("/{job_id}/cancel", response_model=APIResponse[CancelJobResponse])
async def cancel_job(
    request: Request,
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: JobService = Depends(get_job_service),
):
    """
    Cancel a job.

    Succeeds once the job is durably CANCELLED; a running worker stops at
    its next cancellation check.
    """
    request_id = _request_id(request)
    logger.info(f"[{request_id}] POST /jobs/{job_id}/cancel - tenant={tenant_id}")
    result = await service.cancel(tenant_id, job_id)
    return APIResponse(request_id=request_id, data=result, message="Job cancelled by user")
