"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Generic, TypeVar
from datetime import datetime
from models.base import JobType, JobStatus
from schemas.connectors import ConnectorMetadata

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    request_id: Optional[str] = None
    success: bool = True
    data: T
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None


# ============================================================================
# Job Schemas
# ============================================================================

class JobConfig(BaseModel):
    """Per-job extraction and loading options (camelCase on the wire)"""
    batch_size: Optional[int] = Field(None, alias="batchSize", ge=1, le=1000)
    start_date: Optional[datetime] = Field(None, alias="startDate")
    end_date: Optional[datetime] = Field(None, alias="endDate")
    max_records: Optional[int] = Field(None, alias="maxRecords", ge=1)
    include_details: Optional[bool] = Field(None, alias="includeDetails")
    detail_batch_size: Optional[int] = Field(None, alias="detailBatchSize", ge=1)
    source_job_id: Optional[str] = Field(None, alias="sourceJobId")
    filters: Dict[str, Any] = Field(default_factory=dict)

    @validator("end_date")
    def validate_date_range(cls, v, values):
        start = values.get("start_date")
        if v is not None and start is not None and v < start:
            raise ValueError("endDate must not be before startDate")
        return v

    class Config:
        populate_by_name = True


class CreateJobRequest(BaseModel):
    """Body of POST /jobs"""
    job_type: JobType = Field(..., alias="jobType")
    source_connector_id: str = Field(..., alias="sourceConnectorId", min_length=1)
    destination_connector_id: Optional[str] = Field(None, alias="destinationConnectorId")
    entities: List[str] = Field(..., min_length=1)
    config: JobConfig = Field(default_factory=JobConfig)

    @validator("destination_connector_id", always=True)
    def destination_matches_job_type(cls, v, values):
        job_type = values.get("job_type")
        if job_type in (JobType.LOADING, JobType.MIGRATION) and not v:
            raise ValueError(f"destinationConnectorId is required for {job_type.value} jobs")
        if job_type == JobType.EXTRACTION:
            return None
        return v

    @validator("entities")
    def validate_entities(cls, v):
        cleaned = []
        for entity in v:
            entity = entity.strip().lower()
            if not entity:
                raise ValueError("entity types must be non-empty")
            if entity not in cleaned:
                cleaned.append(entity)
        return cleaned

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "jobType": "MIGRATION",
                "sourceConnectorId": "8a4c2f1e-0000-4000-8000-000000000001",
                "destinationConnectorId": "8a4c2f1e-0000-4000-8000-000000000002",
                "entities": ["tickets", "users"],
                "config": {"batchSize": 100, "includeDetails": True, "detailBatchSize": 10}
            }
        }


class JobProgressInfo(BaseModel):
    phase: Optional[str] = None
    percentage: int = 0
    current_entity: Optional[str] = None
    records_processed: int = 0
    total_records: Optional[int] = None
    message: Optional[str] = None


class JobResponse(BaseModel):
    """Response model for a job"""
    id: str
    tenant_id: str
    job_type: JobType
    status: JobStatus
    source_connector_id: str
    destination_connector_id: Optional[str]
    entities: List[str]
    config: Dict[str, Any] = Field(default_factory=dict)
    progress: Optional[JobProgressInfo] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobStatsResponse(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)


class TimelineEventResponse(BaseModel):
    event_type: str
    message: str
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="event_metadata")
    timestamp: datetime

    class Config:
        from_attributes = True


class CancelJobResponse(BaseModel):
    job_id: str
    status: JobStatus
    cancelled: bool


# ============================================================================
# Connector Schemas
# ============================================================================

class ConnectorTypesResponse(BaseModel):
    connectors: List[ConnectorMetadata]


class ValidateConfigRequest(BaseModel):
    config: Dict[str, Any]


class ValidateConfigResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class RateLimitStatusResponse(BaseModel):
    connector_type: str
    requests_per_minute: int
    current_requests: int
    remaining: int
    reset_at: float
    last_429: Optional[Dict[str, Any]] = None


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    redis_connected: bool = False
    active_jobs: int = 0
    failed_jobs: int = 0
    # Declared last so the validator sees the connectivity flags
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Database down is fatal; Redis down only degrades (limiter fails open)"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("redis_connected", False):
            return "degraded"
        return "healthy"
