"""
Connector type discovery, config validation and rate-limit status
"""

from fastapi import APIRouter, Depends, Request
import uuid
import logging

from api.dependencies import get_rate_limiter, get_registry, get_tenant_id
from ingestion.connectors.registry import ConnectorRegistry
from ingestion.rate_limiter import RateLimiter
from schemas.api import (
    APIResponse,
    ConnectorTypesResponse,
    RateLimitStatusResponse,
    ValidateConfigRequest,
    ValidateConfigResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connectors", tags=["Connectors"])


@router.get("/types", response_model=APIResponse[ConnectorTypesResponse])
async def list_connector_types(
    request: Request,
    registry: ConnectorRegistry = Depends(get_registry),
):
    """Metadata and config schema (with sensitivity flags) of every supported platform"""
    return APIResponse(
        request_id=getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}"),
        data=ConnectorTypesResponse(connectors=registry.all_metadata()),
    )


@router.post("/types/{connector_type}/validate", response_model=APIResponse[ValidateConfigResponse])
async def validate_connector_config(
    request: Request,
    connector_type: str,
    body: ValidateConfigRequest,
    registry: ConnectorRegistry = Depends(get_registry),
):
    errors = registry.validate_config(connector_type, body.config)
    return APIResponse(
        request_id=getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}"),
        data=ValidateConfigResponse(valid=not errors, errors=errors),
    )


@router.get("/types/{connector_type}/rate-limit", response_model=APIResponse[RateLimitStatusResponse])
async def connector_rate_limit(
    request: Request,
    connector_type: str,
    tenant_id: str = Depends(get_tenant_id),
    registry: ConnectorRegistry = Depends(get_registry),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Current sliding-window usage of the tenant's budget for a platform"""
    registry.get(connector_type)
    status = await rate_limiter.get_status(tenant_id, connector_type)
    return APIResponse(
        request_id=getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}"),
        data=RateLimitStatusResponse(**status),
    )
