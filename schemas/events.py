"""
Progress event published for every job state change and progress tick
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
import enum


class ProgressEventType(str, enum.Enum):
    PROGRESS = "progress"
    STATUS = "status"
    ERROR = "error"
    COMPLETE = "complete"


class ProgressData(BaseModel):
    progress: int = 0
    status: str
    message: Optional[str] = None
    phase: Optional[str] = None
    current_entity: Optional[str] = Field(None, alias="currentEntity")
    records_processed: Optional[int] = Field(None, alias="recordsProcessed")
    total_records: Optional[int] = Field(None, alias="totalRecords")

    class Config:
        populate_by_name = True


class ProgressEvent(BaseModel):
    job_id: str = Field(..., alias="jobId")
    tenant_id: str = Field(..., alias="tenantId")
    type: ProgressEventType
    data: ProgressData
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
