"""
FastAPI dependencies: tenant resolution and access to wired components.
"""

from fastapi import Header, Request

from core.exceptions import ValidationError
from core.redis import EphemeralStore
from ingestion.connectors.registry import ConnectorRegistry
from ingestion.rate_limiter import RateLimiter
from ingestion.service import JobService
from ingestion.store import JobStore


async def get_tenant_id(x_tenant_id: str = Header(None, alias="X-Tenant-ID")) -> str:
    """Every job and connector is scoped to the calling tenant"""
    if not x_tenant_id or not x_tenant_id.strip():
        raise ValidationError("X-Tenant-ID header is required")
    return x_tenant_id.strip()


def get_job_service(request: Request) -> JobService:
    return request.app.state.components.service


def get_job_store(request: Request) -> JobStore:
    return request.app.state.components.store


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.components.registry


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.components.rate_limiter


def get_ephemeral_store(request: Request) -> EphemeralStore:
    return request.app.state.components.ephemeral


def get_session_maker(request: Request):
    return request.app.state.components.session_maker
