"""
In-memory stand-ins for Redis, the progress channel, the clock and the
Freshservice API
"""

import json
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Set
from urllib.parse import parse_qs

import httpx

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


class InMemoryEphemeralStore:
    """EphemeralStore with the same semantics as RedisStore (TTLs ignored)"""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.windows: Dict[str, List[float]] = defaultdict(list)
        self.published: List[tuple] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.values.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._check()
        self.values[key] = value

    async def incr(self, key: str, ttl_seconds: int) -> int:
        self._check()
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value

    async def window_count(self, key: str, window_start: float) -> int:
        self._check()
        self.windows[key] = [ts for ts in self.windows[key] if ts > window_start]
        return len(self.windows[key])

    async def window_add(self, key: str, timestamps: Sequence[float], ttl_seconds: int) -> None:
        self._check()
        self.windows[key].extend(timestamps)

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 0

    async def ping(self) -> bool:
        return not self.fail

    async def close(self) -> None:
        pass


class RecordingEmitter:
    def __init__(self):
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeFreshservice:
    """
    Minimal Freshservice v2 API for one domain.

    Paginates ``tickets`` with page/per_page, serves ticket details, and
    accepts ticket creation. Behaviour hooks:
        failing_details: ticket ids whose detail request returns 404
        detail_responses: ticket id -> canned response for its detail request
        rejected_subjects: subjects a POST rejects with a field error
        responses: queued (status, headers) overrides returned before normal handling
        on_request: async callback run before each request is answered
    """

    def __init__(self, domain: str, tickets: Optional[List[Dict[str, Any]]] = None):
        self.domain = domain
        self.tickets = tickets or []
        self.failing_details: Set[int] = set()
        self.detail_responses: Dict[int, httpx.Response] = {}
        self.rejected_subjects: Set[str] = set()
        self.responses: List[tuple] = []
        self.created: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.on_request = None

    def requests_to(self, method: str, path_prefix: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path.startswith(f"/api/v2{path_prefix}")
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            await self.on_request(request)

        if self.responses:
            status, headers = self.responses.pop(0)
            return httpx.Response(status, headers=headers, json={"description": "override"})

        path = request.url.path[len("/api/v2"):]
        if path == "/agents/me":
            return httpx.Response(200, json={"agent": {"email": "agent@example.com"}})

        if request.method == "GET" and path == "/tickets":
            params = parse_qs(request.url.query.decode())
            page = int(params["page"][0])
            per_page = int(params["per_page"][0])
            start = (page - 1) * per_page
            return httpx.Response(200, json={"tickets": self.tickets[start:start + per_page]})

        if request.method == "GET" and path.startswith("/tickets/"):
            ticket_id = int(path.rsplit("/", 1)[1])
            if ticket_id in self.detail_responses:
                return self.detail_responses[ticket_id]
            if ticket_id in self.failing_details:
                return httpx.Response(404, json={"description": "Record not found"})
            ticket = next(t for t in self.tickets if t["id"] == ticket_id)
            return httpx.Response(200, json={"ticket": {**ticket, "tags": ["detail"]}})

        if request.method == "POST" and path == "/tickets":
            body = json.loads(request.content)
            if body.get("subject") in self.rejected_subjects:
                return httpx.Response(400, json={
                    "description": "Validation failed",
                    "errors": [{"field": "subject", "message": "Subject is not allowed", "code": "invalid_value"}]
                })
            created = {**body, "id": 1000 + len(self.created)}
            self.created.append(created)
            return httpx.Response(201, json={"ticket": created})

        return httpx.Response(404, json={"description": f"No route for {request.method} {path}"})


def make_ticket(ticket_id: int, **overrides) -> Dict[str, Any]:
    ticket = {
        "id": ticket_id,
        "subject": f"Ticket {ticket_id}",
        "description_text": f"Description of ticket {ticket_id}",
        "status": 2,
        "priority": 1,
        "source": 2,
        "requester": {"email": f"user{ticket_id}@example.com"},
        "created_at": "2024-01-15T10:00:00Z",
        "updated_at": "2024-01-16T10:00:00Z",
    }
    ticket.update(overrides)
    return ticket


def route_by_host(*apis: FakeFreshservice) -> httpx.MockTransport:
    """One transport serving several fake platforms keyed by host"""
    by_host = {api.domain: api for api in apis}

    async def handler(request: httpx.Request) -> httpx.Response:
        api = by_host.get(request.url.host)
        if api is None:
            return httpx.Response(404, json={"description": f"Unknown host {request.url.host}"})
        return await api.handle(request)

    return httpx.MockTransport(handler)
