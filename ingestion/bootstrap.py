"""
Wires the pipeline components for the API process and the worker process.
"""

from dataclasses import dataclass
from typing import Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from core.config import Settings, settings as default_settings
from core.database import build_session_maker, engine as default_engine
from core.redis import RedisStore
from ingestion.cancellation import CancellationOracle
from ingestion.connectors.registry import ConnectorRegistry, build_default_registry
from ingestion.orchestrator import JobOrchestrator
from ingestion.progress import RedisProgressEmitter
from ingestion.queue import SqlAlchemyJobQueue
from ingestion.rate_limiter import RateLimiter
from ingestion.service import JobService
from ingestion.store import SqlAlchemyJobStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker
    ephemeral: RedisStore
    store: SqlAlchemyJobStore
    queue: SqlAlchemyJobQueue
    rate_limiter: RateLimiter
    oracle: CancellationOracle
    emitter: RedisProgressEmitter
    registry: ConnectorRegistry
    orchestrator: JobOrchestrator
    service: JobService

    async def close(self) -> None:
        await self.ephemeral.close()
        await self.engine.dispose()


def build_components(
    settings: Settings = default_settings,
    engine: Optional[AsyncEngine] = None,
) -> Components:
    engine = engine or default_engine
    session_maker = build_session_maker(engine)
    ephemeral = RedisStore(settings.REDIS_URL)

    store = SqlAlchemyJobStore(session_maker, retention_days=settings.DATA_RETENTION_DAYS)
    queue = SqlAlchemyJobQueue(
        session_maker,
        backoff_seconds=settings.QUEUE_BACKOFF_SECONDS,
        lease_seconds=settings.QUEUE_LEASE_SECONDS,
    )
    rate_limiter = RateLimiter(ephemeral)
    oracle = CancellationOracle(
        ephemeral,
        store,
        flag_ttl_seconds=settings.CANCELLATION_FLAG_TTL_SECONDS,
        db_check_interval=settings.CANCELLATION_DB_CHECK_INTERVAL_SECONDS,
    )
    emitter = RedisProgressEmitter(ephemeral)
    registry = build_default_registry()

    orchestrator = JobOrchestrator(
        store, registry, rate_limiter, oracle, emitter,
        default_batch_size=settings.DEFAULT_BATCH_SIZE,
    )
    service = JobService(store, queue, oracle, registry)

    logger.info(f"Components built for environment={settings.ENVIRONMENT}")
    return Components(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        ephemeral=ephemeral,
        store=store,
        queue=queue,
        rate_limiter=rate_limiter,
        oracle=oracle,
        emitter=emitter,
        registry=registry,
        orchestrator=orchestrator,
        service=service,
    )
