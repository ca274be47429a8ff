"""
Freshservice connector (REST API v2, basic auth with the API key).
"""

from typing import Any, Dict, List, Optional
import re
import logging

import httpx

from core.exceptions import AuthenticationError, BridgeException, ConnectorRequestError
from ingestion.connectors.base import BaseConnector
from schemas.connectors import (
    ConfigField,
    ConnectionTestResult,
    ConnectorCapabilities,
    ExtractedData,
    ExtractionOptions,
    LoadRecordError,
)

logger = logging.getLogger(__name__)

TICKET_STATUS = {2: "Open", 3: "Pending", 4: "Resolved", 5: "Closed"}
TICKET_PRIORITY = {1: "Low", 2: "Medium", 3: "High", 4: "Urgent"}
TICKET_SOURCE = {
    1: "Email", 2: "Portal", 3: "Phone", 4: "Chat", 5: "Feedback Widget",
    6: "Yammer", 7: "AWS Cloudwatch", 8: "Pagerduty", 9: "Walkup", 10: "Slack",
}
STATUS_CODES = {name.lower(): code for code, name in TICKET_STATUS.items()}
PRIORITY_CODES = {name.lower(): code for code, name in TICKET_PRIORITY.items()}
SOURCE_CODES = {name.lower(): code for code, name in TICKET_SOURCE.items()}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# entity -> (path, response key, singular key)
ENDPOINTS = {
    "tickets": ("/tickets", "tickets", "ticket"),
    "assets": ("/assets", "assets", "asset"),
    "users": ("/requesters", "requesters", "requester"),
    "groups": ("/groups", "groups", "group"),
}

REQUIRED_FOR_LOAD = {
    "tickets": ["subject", "description", "status", "priority"],
    "assets": ["name", "asset_type_id"],
    "users": ["first_name", "primary_email"],
    "groups": ["name"],
}

MAX_PAGE_SIZE = 100


def _code(value: Any, codes: Dict[str, int], default: Optional[int] = None) -> Optional[int]:
    """Accept either a platform code or an internal name."""
    if value is None:
        return default
    if isinstance(value, int):
        return value
    return codes.get(str(value).lower(), default)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


class FreshserviceConnector(BaseConnector):
    connector_type = "FRESHSERVICE"
    display_name = "Freshservice"
    description = "Freshworks Freshservice ITSM (tickets, assets, requesters, groups)"
    supported_entities = list(ENDPOINTS)
    detail_entities = ["tickets"]
    capabilities = ConnectorCapabilities(
        max_batch_size=MAX_PAGE_SIZE,
        default_batch_size=MAX_PAGE_SIZE,
        supports_detail_extraction=True,
    )
    config_fields = [
        ConfigField(
            name="domain", label="Domain",
            description="Freshservice domain, e.g. acme.freshservice.com"
        ),
        ConfigField(name="api_key", label="API Key", sensitive=True),
    ]
    default_retry_after_seconds = 60.0

    @property
    def base_url(self) -> str:
        domain = self.config["domain"].strip().rstrip("/")
        domain = re.sub(r"^https?://", "", domain)
        return f"https://{domain}/api/v2"

    def _client_options(self) -> Dict[str, Any]:
        return {
            "auth": httpx.BasicAuth(self.config["api_key"], "X"),
            "headers": {"Content-Type": "application/json"},
        }

    async def test_connection(self) -> ConnectionTestResult:
        try:
            response = await self._request("GET", "/agents/me")
        except AuthenticationError as e:
            return ConnectionTestResult(success=False, message="Invalid API key", details=e.context)
        except BridgeException as e:
            return ConnectionTestResult(success=False, message=e.message)

        agent = response.json().get("agent", {})
        return ConnectionTestResult(
            success=True,
            message="Connected to Freshservice",
            details={"agent_email": agent.get("email"), "domain": self.config["domain"]}
        )

    async def authenticate(self) -> bool:
        """False only when the API key is rejected; transient errors propagate."""
        try:
            await self._request("GET", "/agents/me")
        except AuthenticationError as e:
            logger.error(f"Freshservice authentication failed for connector {self.connector_id}: {e.message}")
            return False
        return True

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract(self, entity_type: str, options: ExtractionOptions) -> ExtractedData:
        path, key, _ = ENDPOINTS[entity_type]
        page = int(options.cursor or 1)
        per_page = min(options.batch_size, MAX_PAGE_SIZE)

        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if entity_type == "tickets":
            params["include"] = "requester,stats"
            if options.start_date:
                params["updated_since"] = options.start_date.strftime("%Y-%m-%dT%H:%M:%SZ")

        response = await self._request("GET", path, params=params)
        records = response.json().get(key, [])

        # A short page is the last page
        has_more = len(records) == per_page

        if options.end_date:
            cutoff = options.end_date.strftime("%Y-%m-%dT%H:%M:%SZ")
            records = [r for r in records if not r.get("updated_at") or r["updated_at"] <= cutoff]

        if records and self.wants_details(entity_type, options):
            records = await self.fetch_details(entity_type, records, options)

        return ExtractedData(
            records=records,
            has_more=has_more,
            next_cursor=str(page + 1) if has_more else None
        )

    async def fetch_record_detail(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        path, _, singular = ENDPOINTS[entity_type]
        response = await self._request(
            "GET", f"{path}/{record['id']}", params={"include": "tags,requester,stats"}
        )
        return response.json().get(singular, {})

    # ------------------------------------------------------------------
    # Transformation
    # ------------------------------------------------------------------

    def transform_for_extraction(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        transform = {
            "tickets": self._ticket_to_internal,
            "assets": self._asset_to_internal,
            "users": self._user_to_internal,
            "groups": self._group_to_internal,
        }[entity_type]
        return [transform(record) for record in records]

    @staticmethod
    def _ticket_to_internal(ticket: Dict[str, Any]) -> Dict[str, Any]:
        requester = ticket.get("requester") or {}
        return {
            "external_id": str(ticket["id"]),
            "subject": ticket.get("subject"),
            "description": ticket.get("description_text") or ticket.get("description"),
            "status": TICKET_STATUS.get(ticket.get("status"), "Unknown"),
            "priority": TICKET_PRIORITY.get(ticket.get("priority"), "Unknown"),
            "source": TICKET_SOURCE.get(ticket.get("source"), "Unknown"),
            "type": ticket.get("type"),
            "requester_id": ticket.get("requester_id"),
            "requester_email": requester.get("email") or ticket.get("email"),
            "responder_id": ticket.get("responder_id"),
            "group_id": ticket.get("group_id"),
            "category": ticket.get("category"),
            "sub_category": ticket.get("sub_category"),
            "due_by": ticket.get("due_by"),
            "tags": ticket.get("tags") or [],
            "custom_fields": ticket.get("custom_fields") or {},
            "created_at": ticket.get("created_at"),
            "updated_at": ticket.get("updated_at"),
            "source_system": "freshservice",
        }

    @staticmethod
    def _asset_to_internal(asset: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": str(asset["id"]),
            "name": asset.get("name"),
            "description": asset.get("description"),
            "asset_type_id": asset.get("asset_type_id"),
            "asset_tag": asset.get("asset_tag"),
            "impact": asset.get("impact"),
            "usage_type": asset.get("usage_type"),
            "user_id": asset.get("user_id"),
            "location_id": asset.get("location_id"),
            "department_id": asset.get("department_id"),
            "created_at": asset.get("created_at"),
            "updated_at": asset.get("updated_at"),
            "source_system": "freshservice",
        }

    @staticmethod
    def _user_to_internal(user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": str(user["id"]),
            "first_name": user.get("first_name"),
            "last_name": user.get("last_name"),
            "email": user.get("primary_email") or user.get("email"),
            "job_title": user.get("job_title"),
            "work_phone": user.get("work_phone_number"),
            "mobile_phone": user.get("mobile_phone_number"),
            "department_id": (user.get("department_ids") or [None])[0],
            "active": user.get("active", True),
            "created_at": user.get("created_at"),
            "updated_at": user.get("updated_at"),
            "source_system": "freshservice",
        }

    @staticmethod
    def _group_to_internal(group: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": str(group["id"]),
            "name": group.get("name"),
            "description": group.get("description"),
            "agent_ids": group.get("agent_ids") or group.get("members") or [],
            "restricted": group.get("restricted", False),
            "approval_required": group.get("approval_required", False),
            "created_at": group.get("created_at"),
            "updated_at": group.get("updated_at"),
            "source_system": "freshservice",
        }

    def transform_for_load(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if entity_type == "tickets":
            return [_drop_none({
                "subject": r.get("subject"),
                "description": r.get("description"),
                "status": _code(r.get("status"), STATUS_CODES, 2),
                "priority": _code(r.get("priority"), PRIORITY_CODES, 1),
                "source": _code(r.get("source"), SOURCE_CODES, 2),
                "email": r.get("requester_email"),
                "category": r.get("category"),
                "sub_category": r.get("sub_category"),
                "due_by": r.get("due_by"),
                "tags": r.get("tags") or [],
                "external_id": r.get("external_id"),
            }) for r in records]
        if entity_type == "assets":
            return [_drop_none({
                "name": r.get("name"),
                "description": r.get("description"),
                "asset_type_id": r.get("asset_type_id"),
                "asset_tag": r.get("asset_tag"),
                "impact": r.get("impact"),
                "usage_type": r.get("usage_type"),
                "external_id": r.get("external_id"),
            }) for r in records]
        if entity_type == "users":
            return [_drop_none({
                "first_name": r.get("first_name"),
                "last_name": r.get("last_name"),
                "primary_email": r.get("email"),
                "job_title": r.get("job_title"),
                "work_phone_number": r.get("work_phone"),
                "mobile_phone_number": r.get("mobile_phone"),
                "external_id": r.get("external_id"),
            }) for r in records]
        return [_drop_none({
            "name": r.get("name"),
            "description": r.get("description"),
            "restricted": r.get("restricted", False),
            "approval_required": r.get("approval_required", False),
            "external_id": r.get("external_id"),
        }) for r in records]

    def validate_for_load(self, entity_type: str, records: List[Dict[str, Any]]) -> List[LoadRecordError]:
        errors = []
        for index, record in enumerate(records):
            external_id = record.get("external_id")
            for field in REQUIRED_FOR_LOAD[entity_type]:
                if record.get(field) in (None, ""):
                    errors.append(LoadRecordError(
                        record_index=index, external_id=external_id,
                        error=f"Missing required field: {field}", field=field
                    ))

            if entity_type == "tickets":
                if record.get("status") is not None and record["status"] not in TICKET_STATUS:
                    errors.append(LoadRecordError(
                        record_index=index, external_id=external_id,
                        error="Status must be one of 2 (Open), 3 (Pending), 4 (Resolved), 5 (Closed)",
                        field="status", value=record["status"]
                    ))
                if record.get("priority") is not None and record["priority"] not in TICKET_PRIORITY:
                    errors.append(LoadRecordError(
                        record_index=index, external_id=external_id,
                        error="Priority must be between 1 (Low) and 4 (Urgent)",
                        field="priority", value=record["priority"]
                    ))
                if not record.get("email") and not record.get("requester_id"):
                    errors.append(LoadRecordError(
                        record_index=index, external_id=external_id,
                        error="Ticket needs a requester email or requester_id", field="email"
                    ))

            if entity_type == "users" and record.get("primary_email"):
                if not EMAIL_PATTERN.match(record["primary_email"]):
                    errors.append(LoadRecordError(
                        record_index=index, external_id=external_id,
                        error="Invalid email address", field="primary_email", value=record["primary_email"]
                    ))
        return errors

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def create_record(self, entity_type: str, payload: Dict[str, Any]) -> Optional[str]:
        path, _, singular = ENDPOINTS[entity_type]
        body = {k: v for k, v in payload.items() if k != "external_id"}
        response = await self._request("POST", path, json=body)
        created = response.json().get(singular, {})
        return str(created["id"]) if created.get("id") is not None else None

    def record_errors(
        self, index: int, payload: Dict[str, Any], error: ConnectorRequestError
    ) -> List[LoadRecordError]:
        # {"description": "Validation failed", "errors": [{"field": ..., "message": ..., "code": ...}]}
        details = error.details if isinstance(error.details, dict) else {}
        field_errors = details.get("errors") or []
        if not field_errors:
            return super().record_errors(index, payload, error)
        return [
            LoadRecordError(
                record_index=index,
                external_id=payload.get("external_id"),
                error=item.get("message") or details.get("description") or error.message,
                field=item.get("field"),
                value=payload.get(item.get("field")) if item.get("field") else None,
            )
            for item in field_errors
        ]
