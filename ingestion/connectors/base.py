"""
Base connector: the capability contract every platform implements.

Subclasses supply endpoints, authentication, page parsing and field
mapping. The base class owns everything that must behave identically
across platforms:

- Outbound HTTP with rate-limit admission, 429 pause-and-retry (circuit
  breaker) and transient-error retry with exponential backoff
- Pagination loop with progress callbacks and max-records cap
- Two-phase extraction: list pages, then per-record detail in bounded
  concurrent batches with fallback to list data on failure
- Best-effort loading that folds per-record failures into a LoadOutcome
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import time
import logging

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    BridgeException,
    CircuitBreakerOpenError,
    ConnectorRequestError,
    ExtractionError,
    JobCancelledError,
    LoadError,
    NetworkError,
    RateLimitedError,
    ValidationError,
)
from ingestion.cancellation import NeverCancelled
from ingestion.rate_limiter import CircuitBreaker, RateLimiter
from schemas.connectors import (
    ConfigField,
    ConnectionTestResult,
    ConnectorCapabilities,
    ConnectorMetadata,
    ExtractedData,
    ExtractionOptions,
    LoadOutcome,
    LoadRecordError,
)

logger = logging.getLogger(__name__)

# (records_so_far, total_estimate, page_number)
ProgressCallback = Callable[[int, Optional[int], int], Awaitable[None]]

DETAIL_SOURCE = "detail_api"
FALLBACK_SOURCE = "list_api_fallback"


class BaseConnector(ABC):
    """
    Abstract base class for platform connectors.

    One instance serves one job run; it owns an ``httpx.AsyncClient`` and a
    CircuitBreaker, so a 429 pauses only the requests of this job.

    Attributes:
        connector_type: Registry key, e.g. "FRESHSERVICE"
        supported_entities: Entity types the connector can extract
        detail_entities: Entity types with a per-record detail endpoint
        default_retry_after_seconds: Pause after a 429 without Retry-After
    """

    connector_type: str = ""
    display_name: str = ""
    description: str = ""
    supported_entities: List[str] = []
    detail_entities: List[str] = []
    capabilities = ConnectorCapabilities()
    config_fields: List[ConfigField] = []
    default_retry_after_seconds: float = 60.0
    max_rate_limit_waits: int = 20
    page_delay_seconds: float = 0.0

    def __init__(
        self,
        config: Dict[str, Any],
        connector_id: str = "",
        tenant_id: str = "",
        rate_limiter: Optional[RateLimiter] = None,
        cancellation=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = settings.HTTP_TIMEOUT_SECONDS,
        max_retries: int = settings.HTTP_MAX_RETRIES,
        retry_delay: float = settings.HTTP_RETRY_DELAY_SECONDS,
        max_consecutive_429: int = settings.CIRCUIT_BREAKER_MAX_429,
        detail_batch_delay: float = settings.DETAIL_BATCH_DELAY_SECONDS,
    ):
        errors = self.validate_config(config)
        if errors:
            raise ValidationError(
                f"Invalid {self.connector_type} configuration: {'; '.join(errors)}",
                context={"connector_type": self.connector_type, "connector_id": connector_id}
            )

        self.config = config
        self.connector_id = connector_id
        self.tenant_id = tenant_id
        self.rate_limiter = rate_limiter
        self.cancellation = cancellation or NeverCancelled()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_consecutive_429 = max_consecutive_429
        self.detail_batch_delay = detail_batch_delay

        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self.circuit_breaker = CircuitBreaker(
            f"{self.connector_type}:{connector_id or 'adhoc'}", clock=clock, sleep=sleep
        )

    # ------------------------------------------------------------------
    # Metadata / configuration
    # ------------------------------------------------------------------

    @classmethod
    def metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            type=cls.connector_type,
            name=cls.display_name,
            description=cls.description,
            supported_entities=list(cls.supported_entities),
            capabilities=cls.capabilities,
            config_fields=list(cls.config_fields),
        )

    @classmethod
    def validate_config(cls, config: Dict[str, Any]) -> List[str]:
        """Return human-readable problems with ``config``; empty means valid."""
        errors = []
        for field in cls.config_fields:
            value = config.get(field.name)
            missing = value is None or (isinstance(value, str) and not value.strip())
            if missing:
                if field.required:
                    errors.append(f"{field.label} is required")
                continue
            if field.choices and value not in field.choices:
                errors.append(f"{field.label} must be one of: {', '.join(field.choices)}")
        return errors + cls._validate_config_rules(config)

    @classmethod
    def _validate_config_rules(cls, config: Dict[str, Any]) -> List[str]:
        """Cross-field rules; overridden where a platform has them."""
        return []

    def supports_entity(self, entity_type: str) -> bool:
        return entity_type in self.supported_entities

    # ------------------------------------------------------------------
    # HTTP client lifecycle
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def base_url(self) -> str:
        pass

    def _client_options(self) -> Dict[str, Any]:
        """Extra httpx.AsyncClient arguments (auth, headers)."""
        return {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                **self._client_options()
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------

    async def _auth_headers(self) -> Dict[str, str]:
        """Per-request auth headers (OAuth connectors refresh tokens here)."""
        return {}

    async def _handle_unauthorized(self) -> bool:
        """Called once on HTTP 401; return True if credentials were refreshed."""
        return False

    async def _acquire_rate_limit(self) -> None:
        if self.rate_limiter is None:
            return
        for _ in range(self.max_rate_limit_waits):
            result = await self.rate_limiter.check_and_reserve(self.tenant_id, self.connector_type)
            if result.allowed:
                return
            await self.rate_limiter.wait_for_reset(self.connector_type, result.retry_after_ms)
            await self.cancellation.raise_if_cancelled()
        raise RateLimitedError(
            f"{self.connector_type} request budget for tenant {self.tenant_id} stayed exhausted "
            f"after {self.max_rate_limit_waits} waits",
            context={"connector_type": self.connector_type, "tenant_id": self.tenant_id}
        )

    def _retry_after_seconds(self, response: httpx.Response) -> float:
        value = response.headers.get("Retry-After")
        if value:
            try:
                return max(float(value), 0.0)
            except ValueError:
                logger.debug(f"Unparseable Retry-After header: {value}")
        return self.default_retry_after_seconds

    async def _backoff(self, attempt: int, reason: str, url: str) -> None:
        delay = self.retry_delay * (2 ** (attempt - 1))
        logger.warning(
            f"{reason} from {self.connector_type} {url}. "
            f"Retrying in {delay} seconds (attempt {attempt}/{self.max_retries})"
        )
        await self._sleep(delay)
        await self.cancellation.raise_if_cancelled()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send one logical request.

        Every physical attempt passes the circuit breaker and the rate
        limiter first. A 429 pauses the whole connector and repeats the
        identical request; the configured number of consecutive 429s opens
        the circuit.

        Raises:
            CircuitBreakerOpenError: Too many consecutive 429 responses
            RateLimitedError: Our own request budget stayed exhausted
            AuthenticationError: HTTP 401/403 (after one credential refresh)
            NetworkError: Transport failures or 5xx after max retries
            ConnectorRequestError: Any other 4xx response
        """
        consecutive_429 = 0
        attempt = 0
        refreshed = False
        extra_headers = kwargs.pop("headers", {})

        while True:
            await self.circuit_breaker.wait()
            await self._acquire_rate_limit()
            headers = {**extra_headers, **(await self._auth_headers())}

            try:
                response = await self.client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                attempt += 1
                if attempt >= self.max_retries:
                    raise NetworkError(
                        f"{type(e).__name__} calling {self.connector_type} after {attempt} attempts",
                        context={"url": url, "connector_type": self.connector_type},
                        original_exception=e
                    )
                await self._backoff(attempt, type(e).__name__, url)
                continue

            status = response.status_code

            if status == 429:
                consecutive_429 += 1
                retry_after = self._retry_after_seconds(response)
                if self.rate_limiter is not None:
                    await self.rate_limiter.record_429(self.tenant_id, self.connector_type, retry_after)
                if consecutive_429 >= self.max_consecutive_429:
                    raise CircuitBreakerOpenError(
                        f"{self.connector_type} kept rate limiting {method} {url} "
                        f"({consecutive_429} consecutive 429 responses)",
                        context={"url": url, "connector_id": self.connector_id},
                        retry_after=retry_after
                    )
                await self.circuit_breaker.pause(retry_after)
                await self.cancellation.raise_if_cancelled()
                continue

            if status in (401, 403):
                if status == 401 and not refreshed and await self._handle_unauthorized():
                    refreshed = True
                    continue
                raise AuthenticationError(
                    f"Authentication failed for {self.connector_type} ({status})",
                    context={"url": url, "status_code": status, "connector_id": self.connector_id}
                )

            if status >= 500:
                attempt += 1
                if attempt >= self.max_retries:
                    raise NetworkError(
                        f"{self.connector_type} server error {status} after {attempt} attempts",
                        status_code=status,
                        context={"url": url, "response_body": response.text[:500]}
                    )
                await self._backoff(attempt, f"Server error {status}", url)
                continue

            if status >= 400:
                raise ConnectorRequestError(
                    f"{self.connector_type} rejected {method} {url} with {status}",
                    status_code=status,
                    details=self._error_details(response),
                    context={"url": url, "response_body": response.text[:500]}
                )

            return response

    @staticmethod
    def _error_details(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text[:500]

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        pass

    @abstractmethod
    async def authenticate(self) -> bool:
        pass

    @abstractmethod
    async def extract(self, entity_type: str, options: ExtractionOptions) -> ExtractedData:
        """Fetch exactly one page; ``options.cursor`` selects it."""
        pass

    async def extract_with_progress(
        self,
        entity_type: str,
        options: ExtractionOptions,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ExtractedData:
        """
        Fetch every page of ``entity_type``.

        Pages are requested in cursor order until a page reports
        has_more=False or max_records is reached. The callback runs after
        each page and may raise JobCancelledError to stop the loop.
        """
        if not self.supports_entity(entity_type):
            raise ValidationError(
                f"{self.connector_type} does not support entity type '{entity_type}'",
                context={"supported": self.supported_entities}
            )

        records: List[Dict[str, Any]] = []
        cursor = options.cursor
        page_number = 0

        while True:
            if page_number and self.page_delay_seconds:
                await self._sleep(self.page_delay_seconds)
            await self.cancellation.raise_if_cancelled()
            page = await self.extract(entity_type, options.model_copy(update={"cursor": cursor}))
            records.extend(page.records)
            page_number += 1

            logger.debug(
                f"{self.connector_type} {entity_type} page {page_number}: "
                f"{len(page.records)} records (total so far {len(records)})"
            )

            if progress_callback is not None:
                await progress_callback(len(records), page.total_count or None, page_number)

            if options.max_records and len(records) >= options.max_records:
                records = records[:options.max_records]
                break
            if not page.has_more:
                break
            if page.next_cursor is None or page.next_cursor == cursor:
                raise ExtractionError(
                    f"{self.connector_type} reported more {entity_type} without a new cursor",
                    context={"cursor": cursor, "page": page_number}
                )
            cursor = page.next_cursor

        logger.info(f"Extracted {len(records)} {entity_type} from {self.connector_type} in {page_number} pages")
        return ExtractedData(records=records, total_count=len(records), has_more=False)

    def wants_details(self, entity_type: str, options: ExtractionOptions) -> bool:
        if not self.capabilities.supports_detail_extraction or entity_type not in self.detail_entities:
            return False
        return True if options.include_details is None else options.include_details

    def detail_batch_size(self, options: ExtractionOptions) -> int:
        requested = options.detail_batch_size or self.capabilities.default_detail_batch_size
        return max(1, min(requested, self.capabilities.max_detail_batch_size))

    async def fetch_record_detail(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.connector_type} has no detail endpoint for {entity_type}")

    async def fetch_details(
        self, entity_type: str, records: List[Dict[str, Any]], options: ExtractionOptions
    ) -> List[Dict[str, Any]]:
        """
        Enrich list records with their detail payloads.

        Batches run concurrently inside, sequentially across, with a fixed
        delay between batches and a cancellation check before each one.
        Output order matches input order.
        """
        size = self.detail_batch_size(options)
        enriched: List[Dict[str, Any]] = []

        for start in range(0, len(records), size):
            if start:
                await self._sleep(self.detail_batch_delay)
            await self.cancellation.raise_if_cancelled()

            batch = records[start:start + size]
            tasks = [asyncio.ensure_future(self._fetch_one_detail(entity_type, r)) for r in batch]
            try:
                enriched.extend(await asyncio.gather(*tasks))
            except BaseException:
                # A fatal error ends the batch; siblings must not outlive it
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        failed = sum(1 for r in enriched if r.get("_detail_extraction_failed"))
        if failed:
            logger.warning(
                f"Detail fetch failed for {failed}/{len(enriched)} {entity_type}; kept list data for those"
            )
        return enriched

    async def _fetch_one_detail(self, entity_type: str, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            detail = await self.fetch_record_detail(entity_type, record)
        except (JobCancelledError, CircuitBreakerOpenError, AuthenticationError):
            raise
        except Exception as e:
            error = e.message if isinstance(e, BridgeException) else str(e) or type(e).__name__
            logger.warning(f"Detail fetch failed for {entity_type} {record.get('id')}: {error}")
            return {
                **record,
                "_extraction_source": FALLBACK_SOURCE,
                "_detail_extraction_failed": True,
                "_detail_extraction_error": error,
            }
        return {**record, **detail, "_extraction_source": DETAIL_SOURCE}

    # ------------------------------------------------------------------
    # Transformation
    # ------------------------------------------------------------------

    @abstractmethod
    def transform_for_extraction(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Platform records -> internal canonical records."""
        pass

    @abstractmethod
    def transform_for_load(self, entity_type: str, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Internal canonical records -> platform create payloads."""
        pass

    @abstractmethod
    def validate_for_load(self, entity_type: str, records: List[Dict[str, Any]]) -> List[LoadRecordError]:
        pass

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_record(self, entity_type: str, payload: Dict[str, Any]) -> Optional[str]:
        """Create one record; returns the platform id when known."""
        pass

    def record_errors(
        self, index: int, payload: Dict[str, Any], error: ConnectorRequestError
    ) -> List[LoadRecordError]:
        """Structured errors for one rejected record; platforms add field detail."""
        return [LoadRecordError(record_index=index, external_id=self.external_id(payload), error=error.message)]

    @staticmethod
    def external_id(record: Dict[str, Any]) -> Optional[str]:
        value = record.get("external_id") or record.get("id")
        return str(value) if value is not None else None

    async def load_batch(self, entity_type: str, records: List[Dict[str, Any]]) -> LoadOutcome:
        """
        Create every record, one request each.

        A rejected record adds an error and the batch continues. Cancellation,
        authentication and an open circuit abort it, and a destination that
        stops answering raises LoadError so the batch is retried as a whole.
        """
        outcome = LoadOutcome()

        for index, payload in enumerate(records):
            try:
                created_id = await self.create_record(entity_type, payload)
            except (JobCancelledError, CircuitBreakerOpenError, AuthenticationError):
                raise
            except NetworkError as e:
                raise LoadError(
                    f"{self.connector_type} became unreachable while loading {entity_type} "
                    f"(record {index} of {len(records)})",
                    context={"connector_id": self.connector_id, "loaded": outcome.success_count},
                    original_exception=e
                )
            except ConnectorRequestError as e:
                outcome.failure_count += 1
                outcome.errors.extend(self.record_errors(index, payload, e))
                continue

            outcome.success_count += 1
            if created_id is not None:
                outcome.created_ids.append(str(created_id))

        logger.info(
            f"Loaded {entity_type} into {self.connector_type}: "
            f"{outcome.success_count} succeeded, {outcome.failure_count} failed"
        )
        return outcome
