"""
ManageEngine ServiceDesk Plus Cloud connector (API v3, Zoho OAuth2).

Tokens come from the Zoho accounts server of the configured data center
and are refreshed five minutes before they expire, or once after a 401.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import json
import re
import logging

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

ACCEPT_HEADER = "application/vnd.manageengine.sdp.v3+json"
DEFAULT_DATA_CENTER = "accounts.zoho.com"
TOKEN_EXPIRY_BUFFER_SECONDS = 300
MAX_ROW_COUNT = 100

# entity -> (path, list key, singular key)
ENDPOINTS = {
    "tickets": ("/requests", "requests", "request"),
    "assets": ("/assets", "assets", "asset"),
    "users": ("/requesters", "requesters", "requester"),
    "problems": ("/problems", "problems", "problem"),
    "changes": ("/changes", "changes", "change"),
}

REQUIRED_FOR_LOAD = {
    "tickets": ["subject"],
    "assets": ["name"],
    "users": ["name", "email_id"],
    "problems": ["title"],
    "changes": ["title"],
}

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _millis_to_iso(value: Optional[Dict[str, Any]]) -> Optional[str]:
    """SDP dates look like {"value": "1700000000000", "display_value": ...}."""
    if not value or not value.get("value"):
        return None
    seconds = int(value["value"]) / 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _name(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return value.get("name") if isinstance(value, dict) else None


def _named(name: Optional[str]) -> Optional[Dict[str, str]]:
    return {"name": name} if name else None


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


class ManageEngineSdpConnector(BaseConnector):
    connector_type = "MANAGEENGINE_SDP"
    display_name = "ManageEngine ServiceDesk Plus"
    description = "ManageEngine ServiceDesk Plus Cloud (requests, assets, requesters, problems, changes)"
    supported_entities = list(ENDPOINTS)
    detail_entities = ["tickets"]
    capabilities = ConnectorCapabilities(
        max_batch_size=MAX_ROW_COUNT,
        default_batch_size=MAX_ROW_COUNT,
        supports_detail_extraction=True,
    )
    config_fields = [
        ConfigField(name="base_url", label="Base URL", description="e.g. https://sdpondemand.manageengine.com"),
        ConfigField(name="client_id", label="Client ID"),
        ConfigField(name="client_secret", label="Client Secret", sensitive=True),
        ConfigField(name="scope", label="OAuth Scope", default="SDPOnDemand.requests.ALL"),
        ConfigField(
            name="grant_type", label="Grant Type", required=False,
            default="authorization_code", choices=["authorization_code", "client_credentials"]
        ),
        ConfigField(name="authorization_code", label="Authorization Code", required=False, sensitive=True),
        ConfigField(name="refresh_token", label="Refresh Token", required=False, sensitive=True),
        ConfigField(name="redirect_uri", label="Redirect URI", required=False, default="https://localhost"),
        ConfigField(
            name="data_center_domain", label="Data Center Domain", required=False,
            default=DEFAULT_DATA_CENTER, description="accounts.zoho.com, accounts.zoho.eu, accounts.zoho.in, ..."
        ),
    ]
    default_retry_after_seconds = 60.0
    page_delay_seconds = 0.1

    def __init__(self, config: Dict[str, Any], **kwargs):
        super().__init__(config, **kwargs)
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = config.get("refresh_token")
        self._token_expires_at: Optional[float] = None
        self._token_lock = asyncio.Lock()

    @classmethod
    def _validate_config_rules(cls, config: Dict[str, Any]) -> List[str]:
        grant_type = config.get("grant_type") or "authorization_code"
        if grant_type == "authorization_code" and not (
            config.get("authorization_code") or config.get("refresh_token")
        ):
            return ["Authorization Code or Refresh Token is required for the authorization_code grant"]
        return []

    @property
    def base_url(self) -> str:
        return f"{self.config['base_url'].rstrip('/')}/api/v3"

    @property
    def token_url(self) -> str:
        data_center = self.config.get("data_center_domain") or DEFAULT_DATA_CENTER
        return f"https://{data_center}/oauth/v2/token"

    def _client_options(self) -> Dict[str, Any]:
        return {"headers": {"Accept": ACCEPT_HEADER}}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _token_expired(self) -> bool:
        if self._access_token is None or self._token_expires_at is None:
            return True
        return self._clock() >= self._token_expires_at - TOKEN_EXPIRY_BUFFER_SECONDS

    async def _token_request(self, form: Dict[str, str]) -> None:
        form = {
            "client_id": self.config["client_id"],
            "client_secret": self.config["client_secret"],
            **form,
        }
        response = await self.client.post(self.token_url, data=form)
        body = self._error_details(response)

        if response.status_code >= 400 or not isinstance(body, dict) or "access_token" not in body:
            error = body.get("error") if isinstance(body, dict) else body
            raise AuthenticationError(
                f"ManageEngine token request failed: {error}",
                context={"grant_type": form.get("grant_type"), "status_code": response.status_code}
            )

        self._access_token = body["access_token"]
        if body.get("refresh_token"):
            self._refresh_token = body["refresh_token"]
        self._token_expires_at = self._clock() + int(body.get("expires_in", 3600))
        logger.info(f"Obtained ManageEngine access token via {form['grant_type']}")

    async def _obtain_token(self) -> None:
        if self._refresh_token:
            await self._token_request({"grant_type": "refresh_token", "refresh_token": self._refresh_token})
            return

        grant_type = self.config.get("grant_type") or "authorization_code"
        if grant_type == "client_credentials":
            await self._token_request({"grant_type": "client_credentials", "scope": self.config["scope"]})
        else:
            await self._token_request({
                "grant_type": "authorization_code",
                "code": self.config["authorization_code"],
                "redirect_uri": self.config.get("redirect_uri") or "https://localhost",
            })

    async def _auth_headers(self) -> Dict[str, str]:
        async with self._token_lock:
            if self._token_expired():
                await self._obtain_token()
        return {"Authorization": f"Zoho-oauthtoken {self._access_token}"}

    async def _handle_unauthorized(self) -> bool:
        async with self._token_lock:
            self._access_token = None
            try:
                await self._obtain_token()
            except AuthenticationError as e:
                logger.error(f"ManageEngine token refresh after 401 failed: {e.message}")
                return False
        return True

    async def authenticate(self) -> bool:
        try:
            async with self._token_lock:
                if self._token_expired():
                    await self._obtain_token()
            return True
        except AuthenticationError as e:
            logger.error(f"ManageEngine authentication failed for connector {self.connector_id}: {e.message}")
            return False

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._request("GET", "/requests", params={
                "input_data": json.dumps({"list_info": {"start_index": 1, "row_count": 1}})
            })
        except AuthenticationError as e:
            return ConnectionTestResult(success=False, message=e.message, details=e.context)
        except BridgeException as e:
            return ConnectionTestResult(success=False, message=e.message)
        return ConnectionTestResult(
            success=True,
            message="Connected to ManageEngine ServiceDesk Plus",
            details={"base_url": self.config["base_url"]}
        )

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _list_info(self, options: ExtractionOptions, start_index: int, row_count: int) -> Dict[str, Any]:
        list_info: Dict[str, Any] = {"start_index": start_index, "row_count": row_count}

        criteria = []
        if options.start_date:
            criteria.append({
                "field": "created_time.value",
                "condition": "greater than",
                "value": str(int(options.start_date.timestamp() * 1000)),
            })
        if options.end_date:
            criteria.append({
                "field": "created_time.value",
                "condition": "lesser than",
                "value": str(int(options.end_date.timestamp() * 1000)),
                "logical_operator": "AND",
            })
        for field, value in options.filters.items():
            criteria.append({"field": field, "condition": "is", "value": value, "logical_operator": "AND"})

        if criteria:
            criteria[0].pop("logical_operator", None)
            list_info["search_criteria"] = criteria
        return list_info

    async def extract(self, entity_type: str, options: ExtractionOptions) -> ExtractedData:
        path, key, _ = ENDPOINTS[entity_type]
        start_index = int(options.cursor or 1)
        row_count = min(options.batch_size, MAX_ROW_COUNT)

        response = await self._request("GET", path, params={
            "input_data": json.dumps({"list_info": self._list_info(options, start_index, row_count)})
        })
        body = response.json()
        records = body.get(key, [])
        list_info = body.get("list_info") or {}

        has_more = bool(list_info.get("has_more_rows", len(records) == row_count)) and bool(records)

        if records and self.wants_details(entity_type, options):
            records = await self.fetch_details(entity_type, records, options)

        return ExtractedData(
            records=records,
            total_count=int(list_info.get("total_count") or 0),
            has_more=has_more,
            next_cursor=str(start_index + len(records)) if has_more else None
        )

    async def fetch_record_detail(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        path, _, singular = ENDPOINTS[entity_type]
        response = await self._request("GET", f"{path}/{record['id']}")
        return response.json().get(singular, {})

    # ------------------------------------------------------------------
    # Transformation
    # ------------------------------------------------------------------

    def transform_for_extraction(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        transform = {
            "tickets": self._request_to_internal,
            "assets": self._asset_to_internal,
            "users": self._user_to_internal,
            "problems": self._problem_to_internal,
            "changes": self._problem_to_internal,
        }[entity_type]
        return [transform(record) for record in records]

    @staticmethod
    def _request_to_internal(request: Dict[str, Any]) -> Dict[str, Any]:
        requester = request.get("requester") or {}
        return {
            "external_id": str(request["id"]),
            "subject": request.get("subject"),
            "description": request.get("description"),
            "status": _name(request.get("status")),
            "priority": _name(request.get("priority")),
            "source": _name(request.get("mode")),
            "type": _name(request.get("request_type")),
            "requester_id": requester.get("id"),
            "requester_email": requester.get("email_id"),
            "responder_id": (request.get("technician") or {}).get("id"),
            "group_id": (request.get("group") or {}).get("id"),
            "category": _name(request.get("category")),
            "sub_category": _name(request.get("subcategory")),
            "due_by": _millis_to_iso(request.get("due_by_time")),
            "tags": [],
            "custom_fields": request.get("udf_fields") or {},
            "created_at": _millis_to_iso(request.get("created_time")),
            "updated_at": _millis_to_iso(request.get("last_updated_time")),
            "source_system": "manageengine_sdp",
        }

    @staticmethod
    def _asset_to_internal(asset: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": str(asset["id"]),
            "name": asset.get("name"),
            "description": asset.get("description"),
            "asset_tag": asset.get("asset_tag"),
            "serial_number": asset.get("serial_number"),
            "asset_type": _name(asset.get("asset_type")),
            "state": _name(asset.get("asset_state")),
            "location": _name(asset.get("location")),
            "user_email": (asset.get("user") or {}).get("email_id"),
            "created_at": _millis_to_iso(asset.get("created_time")),
            "updated_at": _millis_to_iso(asset.get("last_updated_time")),
            "source_system": "manageengine_sdp",
        }

    @staticmethod
    def _user_to_internal(user: Dict[str, Any]) -> Dict[str, Any]:
        first_name = user.get("first_name")
        last_name = user.get("last_name")
        if not first_name and user.get("name"):
            first_name, _, last_name = user["name"].partition(" ")
        return {
            "external_id": str(user["id"]),
            "first_name": first_name,
            "last_name": last_name or None,
            "email": user.get("email_id"),
            "job_title": user.get("job_title"),
            "work_phone": user.get("phone"),
            "mobile_phone": user.get("mobile"),
            "department": _name(user.get("department")),
            "active": not user.get("is_vipuser_deleted", False),
            "created_at": _millis_to_iso(user.get("created_time")),
            "updated_at": _millis_to_iso(user.get("last_updated_time")),
            "source_system": "manageengine_sdp",
        }

    @staticmethod
    def _problem_to_internal(item: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "external_id": str(item["id"]),
            "title": item.get("title"),
            "description": item.get("description"),
            "status": _name(item.get("status")),
            "priority": _name(item.get("priority")),
            "created_at": _millis_to_iso(item.get("created_time")),
            "updated_at": _millis_to_iso(item.get("last_updated_time")),
            "source_system": "manageengine_sdp",
        }

    def transform_for_load(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        payloads = []
        for r in records:
            if entity_type == "tickets":
                payload = {
                    "subject": r.get("subject"),
                    "description": r.get("description"),
                    "status": _named(r.get("status")),
                    "priority": _named(r.get("priority")),
                    "category": _named(r.get("category")),
                    "subcategory": _named(r.get("sub_category")),
                    "requester": {"email_id": r["requester_email"]} if r.get("requester_email") else None,
                }
            elif entity_type == "assets":
                payload = {
                    "name": r.get("name"),
                    "description": r.get("description"),
                    "asset_tag": r.get("asset_tag"),
                    "serial_number": r.get("serial_number"),
                }
            elif entity_type == "users":
                full_name = " ".join(p for p in (r.get("first_name"), r.get("last_name")) if p)
                payload = {
                    "name": full_name or None,
                    "first_name": r.get("first_name"),
                    "last_name": r.get("last_name"),
                    "email_id": r.get("email"),
                    "job_title": r.get("job_title"),
                    "phone": r.get("work_phone"),
                    "mobile": r.get("mobile_phone"),
                }
            else:
                payload = {
                    "title": r.get("title") or r.get("subject"),
                    "description": r.get("description"),
                    "priority": _named(r.get("priority")),
                }
            payload["external_id"] = r.get("external_id")
            payloads.append(_drop_none(payload))
        return payloads

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
            if entity_type == "users" and record.get("email_id") and not EMAIL_PATTERN.match(record["email_id"]):
                errors.append(LoadRecordError(
                    record_index=index, external_id=external_id,
                    error="Invalid email address", field="email_id", value=record["email_id"]
                ))
        return errors

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def create_record(self, entity_type: str, payload: Dict[str, Any]) -> Optional[str]:
        path, _, singular = ENDPOINTS[entity_type]
        body = {k: v for k, v in payload.items() if k != "external_id"}
        response = await self._request("POST", path, data={"input_data": json.dumps({singular: body})})
        created = response.json().get(singular, {})
        return str(created["id"]) if created.get("id") is not None else None

    def record_errors(
        self, index: int, payload: Dict[str, Any], error: ConnectorRequestError
    ) -> List[LoadRecordError]:
        # {"response_status": {"status_code": 4000, "messages": [{"field": ..., "message": ...}]}}
        details = error.details if isinstance(error.details, dict) else {}
        status = details.get("response_status") or {}
        if isinstance(status, list):
            status = status[0] if status else {}
        messages = status.get("messages") or []
        if not messages:
            return super().record_errors(index, payload, error)
        return [
            LoadRecordError(
                record_index=index,
                external_id=payload.get("external_id"),
                error=item.get("message") or f"SDP status code {item.get('status_code')}",
                field=item.get("field"),
                value=payload.get(item.get("field")) if item.get("field") else None,
            )
            for item in messages
        ]
