"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from core.database import build_session_maker
from ingestion.cancellation import CancellationOracle
from ingestion.connectors.registry import build_default_registry
from ingestion.orchestrator import JobOrchestrator
from ingestion.queue import SqlAlchemyJobQueue
from ingestion.rate_limiter import RateLimiter
from ingestion.service import JobService
from ingestion.store import SqlAlchemyJobStore
from models.base import Base
from tests.fakes import (
    TENANT, FakeClock, FakeFreshservice, InMemoryEphemeralStore, RecordingEmitter, make_ticket, route_by_host
)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite file database per test; every session gets its own connection"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bridge_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine):
    return build_session_maker(test_engine)


@pytest.fixture
def store(session_maker):
    return SqlAlchemyJobStore(session_maker, retention_days=7)


@pytest.fixture
def queue(session_maker):
    return SqlAlchemyJobQueue(session_maker, backoff_seconds=2.0, lease_seconds=300)


@pytest.fixture
def ephemeral():
    return InMemoryEphemeralStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def rate_limiter(ephemeral, clock):
    return RateLimiter(ephemeral, clock=clock.time, sleep=clock.sleep)


@pytest.fixture
def oracle(ephemeral, store):
    return CancellationOracle(ephemeral, store, flag_ttl_seconds=300, db_check_interval=5.0)


@pytest.fixture
def freshservice_config():
    return {"domain": "source.freshservice.com", "api_key": "source-key"}


@pytest_asyncio.fixture
async def source_connector(store, freshservice_config):
    return await store.create_connector(TENANT, "FRESHSERVICE", "Source Freshservice", freshservice_config)


@pytest_asyncio.fixture
async def destination_connector(store):
    return await store.create_connector(
        TENANT, "FRESHSERVICE", "Destination Freshservice",
        {"domain": "dest.freshservice.com", "api_key": "dest-key"}
    )


@pytest.fixture
def source_api():
    return FakeFreshservice("source.freshservice.com", [make_ticket(i) for i in range(1, 6)])


@pytest.fixture
def dest_api():
    return FakeFreshservice("dest.freshservice.com")


@pytest.fixture
def orchestrator(store, registry, rate_limiter, oracle, emitter, clock, source_api, dest_api):
    """Orchestrator whose connectors talk to the fake APIs and never really sleep"""
    return JobOrchestrator(
        store, registry, rate_limiter, oracle, emitter,
        connector_options={
            "transport": route_by_host(source_api, dest_api),
            "sleep": clock.sleep,
            "clock": clock.time,
            "detail_batch_delay": 0,
        },
    )


@pytest.fixture
def service(store, queue, oracle, registry):
    return JobService(store, queue, oracle, registry)
