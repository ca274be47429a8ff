"""
Pydantic schemas for the connector capability contract
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


class ExtractionOptions(BaseModel):
    """Options for one extraction call (one page, or all pages with progress)"""
    batch_size: int = Field(default=100, ge=1, description="Page size requested from the platform")
    cursor: Optional[str] = Field(None, description="Opaque page cursor; None means first page")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_records: Optional[int] = Field(None, ge=1)
    include_details: Optional[bool] = Field(
        None, description="Fetch per-record detail; None means connector default for the entity"
    )
    detail_batch_size: Optional[int] = Field(None, ge=1)
    filters: Dict[str, Any] = Field(default_factory=dict)


class ExtractedData(BaseModel):
    """Records of one page (or of all pages when returned by extract_with_progress)"""
    records: List[Dict[str, Any]] = Field(default_factory=list)
    # Total available upstream when the platform reports it; 0 means unknown
    total_count: int = 0
    has_more: bool = False
    next_cursor: Optional[str] = None


class LoadRecordError(BaseModel):
    """Why a single record was rejected by validation or the destination API"""
    record_index: int
    external_id: Optional[str] = None
    error: str
    field: Optional[str] = None
    value: Optional[Any] = None


class LoadOutcome(BaseModel):
    """Best-effort result of loading a batch of records"""
    success_count: int = 0
    failure_count: int = 0
    errors: List[LoadRecordError] = Field(default_factory=list)
    created_ids: List[str] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ConnectorCapabilities(BaseModel):
    max_batch_size: int = 100
    default_batch_size: int = 100
    max_detail_batch_size: int = 20
    default_detail_batch_size: int = 10
    supports_pagination: bool = True
    supports_date_filtering: bool = True
    supports_detail_extraction: bool = False
    supports_loading: bool = True


class ConfigField(BaseModel):
    """One connector configuration field; sensitive values are never echoed back"""
    name: str
    label: str
    required: bool = True
    sensitive: bool = False
    description: Optional[str] = None
    default: Optional[Any] = None
    choices: Optional[List[str]] = None


class ConnectorMetadata(BaseModel):
    type: str
    name: str
    description: str
    version: str = "1.0.0"
    supported_entities: List[str]
    capabilities: ConnectorCapabilities
    config_fields: List[ConfigField] = Field(default_factory=list)
