"""
Unit tests for the Freshservice connector and the shared connector base
"""

import asyncio

import httpx
import pytest

from core.exceptions import (
    AuthenticationError,
    CircuitBreakerOpenError,
    ConnectorRequestError,
    JobCancelledError,
    LoadError,
    NetworkError,
    RateLimitedError,
    ValidationError,
)
from ingestion.connectors.freshservice import FreshserviceConnector
from schemas.connectors import ExtractionOptions
from tests.fakes import TENANT, FakeFreshservice, make_ticket, route_by_host

DOMAIN = "source.freshservice.com"


def make_connector(api, clock, rate_limiter=None, cancellation=None, **kwargs):
    return FreshserviceConnector(
        {"domain": DOMAIN, "api_key": "key"},
        connector_id="conn-1",
        tenant_id=TENANT,
        rate_limiter=rate_limiter,
        cancellation=cancellation,
        transport=route_by_host(api),
        sleep=clock.sleep,
        clock=clock.time,
        detail_batch_delay=1.0,
        **kwargs
    )


class CancelAfter:
    """Token that reports cancellation after ``checks`` calls"""

    def __init__(self, checks):
        self.remaining = checks

    async def is_cancelled(self):
        self.remaining -= 1
        return self.remaining < 0

    async def raise_if_cancelled(self):
        if await self.is_cancelled():
            raise JobCancelledError("Job cancelled by user")


class TestConfiguration:

    def test_missing_fields_rejected(self):
        errors = FreshserviceConnector.validate_config({"domain": ""})
        assert "Domain is required" in errors
        assert "API Key is required" in errors

    def test_invalid_config_raises_on_construction(self):
        with pytest.raises(ValidationError):
            FreshserviceConnector({"domain": DOMAIN})

    def test_base_url_strips_scheme(self):
        connector = FreshserviceConnector({"domain": "https://acme.freshservice.com/", "api_key": "k"})
        assert connector.base_url == "https://acme.freshservice.com/api/v2"

    def test_metadata_marks_api_key_sensitive(self):
        metadata = FreshserviceConnector.metadata()
        fields = {field.name: field for field in metadata.config_fields}
        assert fields["api_key"].sensitive
        assert not fields["domain"].sensitive
        assert metadata.capabilities.supports_detail_extraction


class TestExtraction:

    @pytest.mark.asyncio
    async def test_pagination_250_tickets(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 251)])
        connector = make_connector(api, clock)
        pages = []

        async def on_page(records_so_far, total, page_number):
            pages.append(records_so_far)

        async with connector:
            data = await connector.extract_with_progress(
                "tickets", ExtractionOptions(batch_size=100, include_details=False), on_page
            )

        list_requests = api.requests_to("GET", "/tickets")
        assert [int(r.url.params["page"]) for r in list_requests] == [1, 2, 3]
        assert pages == [100, 200, 250]
        assert len(data.records) == 250
        assert len({r["id"] for r in data.records}) == 250
        assert data.has_more is False

    @pytest.mark.asyncio
    async def test_single_page_batches(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 251)])
        connector = make_connector(api, clock)

        async with connector:
            first = await connector.extract("tickets", ExtractionOptions(batch_size=100, include_details=False))
            second = await connector.extract(
                "tickets", ExtractionOptions(batch_size=100, include_details=False, cursor=first.next_cursor)
            )
            third = await connector.extract(
                "tickets", ExtractionOptions(batch_size=100, include_details=False, cursor=second.next_cursor)
            )

        assert [len(p.records) for p in (first, second, third)] == [100, 100, 50]
        assert [p.has_more for p in (first, second, third)] == [True, True, False]
        assert third.next_cursor is None

    @pytest.mark.asyncio
    async def test_max_records_caps_extraction(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 251)])
        connector = make_connector(api, clock)

        async with connector:
            data = await connector.extract_with_progress(
                "tickets", ExtractionOptions(batch_size=100, max_records=150, include_details=False)
            )

        assert len(data.records) == 150
        assert len(api.requests_to("GET", "/tickets")) == 2

    @pytest.mark.asyncio
    async def test_detail_batch_with_one_failure(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 11)])
        api.failing_details.add(5)
        connector = make_connector(api, clock)

        async with connector:
            data = await connector.extract(
                "tickets", ExtractionOptions(batch_size=100, detail_batch_size=10)
            )

        by_source = [r["_extraction_source"] for r in data.records]
        assert by_source.count("detail_api") == 9
        assert by_source.count("list_api_fallback") == 1

        fallback = next(r for r in data.records if r["id"] == 5)
        assert fallback["_detail_extraction_failed"] is True
        assert fallback["_detail_extraction_error"]
        assert fallback["subject"] == "Ticket 5"

        detailed = next(r for r in data.records if r["id"] == 6)
        assert detailed["tags"] == ["detail"]
        assert [r["id"] for r in data.records] == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_unparseable_detail_body_falls_back_to_list_data(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 11)])
        api.detail_responses[5] = httpx.Response(200, text="<html>gateway hiccup</html>")
        connector = make_connector(api, clock)

        async with connector:
            data = await connector.extract(
                "tickets", ExtractionOptions(batch_size=100, detail_batch_size=10)
            )

        by_source = [r["_extraction_source"] for r in data.records]
        assert by_source.count("detail_api") == 9
        assert by_source.count("list_api_fallback") == 1

        fallback = next(r for r in data.records if r["id"] == 5)
        assert fallback["_detail_extraction_failed"] is True
        assert fallback["_detail_extraction_error"]
        assert fallback["subject"] == "Ticket 5"

    @pytest.mark.asyncio
    async def test_record_without_id_falls_back_to_list_data(self, clock):
        orphan = make_ticket(2)
        del orphan["id"]
        api = FakeFreshservice(DOMAIN, [make_ticket(1), orphan])
        connector = make_connector(api, clock)

        async with connector:
            data = await connector.extract("tickets", ExtractionOptions(batch_size=100))

        assert [r["_extraction_source"] for r in data.records] == ["detail_api", "list_api_fallback"]
        assert data.records[1]["_detail_extraction_error"]
        assert len(api.requests_to("GET", "/tickets/")) == 1

    @pytest.mark.asyncio
    async def test_fatal_detail_error_stops_sibling_fetches(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 11)])
        api.detail_responses[1] = httpx.Response(403, json={"description": "Forbidden"})

        async def slow_details(request):
            if request.url.path.startswith("/api/v2/tickets/") and not request.url.path.endswith("/1"):
                await asyncio.sleep(0.05)

        api.on_request = slow_details
        connector = make_connector(api, clock)

        async with connector:
            with pytest.raises(AuthenticationError):
                await connector.extract(
                    "tickets", ExtractionOptions(batch_size=100, detail_batch_size=10)
                )

        leftover = [
            task for task in asyncio.all_tasks()
            if not task.done() and "_fetch_one_detail" in task.get_coro().__qualname__
        ]
        assert leftover == []

        sent = len(api.requests)
        await asyncio.sleep(0.1)
        assert len(api.requests) == sent

    @pytest.mark.asyncio
    async def test_detail_batches_are_spaced(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 26)])
        connector = make_connector(api, clock)

        async with connector:
            await connector.extract("tickets", ExtractionOptions(batch_size=100, detail_batch_size=10))

        # 25 records in batches of 10 -> two delays between three batches
        assert clock.sleeps == [1.0, 1.0]
        assert len(api.requests_to("GET", "/tickets/")) == 25

    @pytest.mark.asyncio
    async def test_detail_batch_size_is_capped(self, clock):
        connector = make_connector(FakeFreshservice(DOMAIN), clock)
        assert connector.detail_batch_size(ExtractionOptions(detail_batch_size=50)) == 20
        assert connector.detail_batch_size(ExtractionOptions()) == 10

    @pytest.mark.asyncio
    async def test_cancellation_between_detail_batches(self, clock):
        api = FakeFreshservice(DOMAIN, [make_ticket(i) for i in range(1, 31)])
        # One check before the page, one before the first detail batch
        connector = make_connector(api, clock, cancellation=CancelAfter(2))

        async with connector:
            with pytest.raises(JobCancelledError):
                await connector.extract_with_progress(
                    "tickets", ExtractionOptions(batch_size=100, detail_batch_size=10)
                )

        assert len(api.requests_to("GET", "/tickets/")) == 10

    @pytest.mark.asyncio
    async def test_unsupported_entity(self, clock):
        connector = make_connector(FakeFreshservice(DOMAIN), clock)
        with pytest.raises(ValidationError):
            await connector.extract_with_progress("changes", ExtractionOptions())


class TestRequestPolicy:

    @pytest.mark.asyncio
    async def test_429_pauses_for_retry_after_then_retries(self, clock, rate_limiter):
        api = FakeFreshservice(DOMAIN)
        api.responses.append((429, {"Retry-After": "12"}))
        connector = make_connector(api, clock, rate_limiter=rate_limiter)

        async with connector:
            assert await connector.authenticate()

        assert sum(clock.sleeps) >= 12
        assert connector.circuit_breaker.pauses == 1
        assert len(api.requests_to("GET", "/agents/me")) == 2

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises_rate_limited(self, clock, rate_limiter):
        api = FakeFreshservice(DOMAIN, [make_ticket(1)])
        await rate_limiter.check_and_reserve(TENANT, "FRESHSERVICE", n=60)
        connector = make_connector(api, clock, rate_limiter=rate_limiter)
        connector.max_rate_limit_waits = 2

        async with connector:
            with pytest.raises(RateLimitedError) as exc_info:
                await connector.extract("tickets", ExtractionOptions(include_details=False))

        assert exc_info.value.retriable
        assert exc_info.value.code == "RATE_LIMITED"
        assert clock.sleeps == [5.0, 5.0]
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_circuit_opens_on_third_consecutive_429(self, clock, rate_limiter):
        api = FakeFreshservice(DOMAIN)
        api.responses.extend([(429, {"Retry-After": "1"})] * 5)
        connector = make_connector(api, clock, rate_limiter=rate_limiter)

        async with connector:
            with pytest.raises(CircuitBreakerOpenError) as exc_info:
                await connector.authenticate()

        assert exc_info.value.retriable is False
        assert len(api.requests) == 3
        assert connector.circuit_breaker.pauses == 2

    @pytest.mark.asyncio
    async def test_429_without_retry_after_uses_default(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.append((429, {}))
        connector = make_connector(api, clock)

        async with connector:
            await connector.authenticate()

        assert sum(clock.sleeps) >= 60

    @pytest.mark.asyncio
    async def test_server_errors_retry_with_backoff(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.extend([(503, {}), (502, {})])
        connector = make_connector(api, clock)

        async with connector:
            assert await connector.authenticate()

        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.extend([(500, {})] * 3)
        connector = make_connector(api, clock)

        async with connector:
            with pytest.raises(NetworkError) as exc_info:
                await connector.authenticate()

        assert exc_info.value.retriable is True
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unauthorized(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.append((401, {}))
        connector = make_connector(api, clock)

        async with connector:
            assert await connector.authenticate() is False
            result = await connector.test_connection()

        assert result.success is True

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.append((422, {}))
        connector = make_connector(api, clock)

        async with connector:
            with pytest.raises(ConnectorRequestError) as exc_info:
                await connector._request("GET", "/tickets")

        assert exc_info.value.retriable is False
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_transport_errors_become_network_error(self, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        connector = FreshserviceConnector(
            {"domain": DOMAIN, "api_key": "key"},
            transport=httpx.MockTransport(handler),
            sleep=clock.sleep,
            clock=clock.time,
        )
        async with connector:
            with pytest.raises(NetworkError):
                await connector.authenticate()
        assert clock.sleeps == [1.0, 2.0]


class TestTransformAndLoad:

    def test_ticket_round_trip_to_internal(self):
        connector = FreshserviceConnector({"domain": DOMAIN, "api_key": "key"})
        internal = connector.transform_for_extraction("tickets", [make_ticket(7, status=4, priority=3)])[0]

        assert internal["external_id"] == "7"
        assert internal["status"] == "Resolved"
        assert internal["priority"] == "High"
        assert internal["requester_email"] == "user7@example.com"
        assert internal["source_system"] == "freshservice"

        payload = connector.transform_for_load("tickets", [internal])[0]
        assert payload["status"] == 4
        assert payload["priority"] == 3
        assert payload["email"] == "user7@example.com"

    def test_validate_for_load(self):
        connector = FreshserviceConnector({"domain": DOMAIN, "api_key": "key"})
        errors = connector.validate_for_load("tickets", [
            {"subject": "ok", "description": "d", "status": 2, "priority": 1, "email": "a@b.co"},
            {"subject": "", "description": "d", "status": 9, "priority": 1, "email": "a@b.co"},
            {"subject": "s", "description": "d", "status": 2, "priority": 1},
        ])

        assert {e.record_index for e in errors} == {1, 2}
        fields = {(e.record_index, e.field) for e in errors}
        assert (1, "subject") in fields
        assert (1, "status") in fields
        assert (2, "email") in fields

    @pytest.mark.asyncio
    async def test_load_batch_folds_record_errors(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.rejected_subjects.add("bad")
        connector = make_connector(api, clock)
        payloads = [
            {"subject": "good 1", "description": "d", "status": 2, "priority": 1, "email": "a@b.co", "external_id": "1"},
            {"subject": "bad", "description": "d", "status": 2, "priority": 1, "email": "a@b.co", "external_id": "2"},
            {"subject": "good 2", "description": "d", "status": 2, "priority": 1, "email": "a@b.co", "external_id": "3"},
        ]

        async with connector:
            outcome = await connector.load_batch("tickets", payloads)

        assert outcome.success_count == 2
        assert outcome.failure_count == 1
        assert outcome.success_count + outcome.failure_count == len(payloads)
        assert outcome.errors[0].record_index == 1
        assert outcome.errors[0].external_id == "2"
        assert outcome.errors[0].field == "subject"
        assert outcome.created_ids == ["1000", "1001"]
        assert all("external_id" not in created for created in api.created)

    @pytest.mark.asyncio
    async def test_load_batch_aborts_on_authentication_error(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses.append((403, {}))
        connector = make_connector(api, clock)

        async with connector:
            with pytest.raises(AuthenticationError):
                await connector.load_batch("tickets", [{"subject": "s"}])

    @pytest.mark.asyncio
    async def test_unreachable_destination_fails_whole_batch(self, clock):
        api = FakeFreshservice(DOMAIN)
        api.responses = [(503, {})] * 3
        connector = make_connector(api, clock)

        async with connector:
            with pytest.raises(LoadError) as exc_info:
                await connector.load_batch("tickets", [{"subject": "s1"}, {"subject": "s2"}])

        assert exc_info.value.retriable
        assert isinstance(exc_info.value.original_exception, NetworkError)
        assert len(api.requests_to("POST", "/tickets")) == 3
        assert api.created == []
