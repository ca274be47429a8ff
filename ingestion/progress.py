"""
Fire-and-forget progress broadcasting.

Events go to the Redis channel ``job_progress:<job_id>``; subscribers
(dashboards, SSE gateways) are outside this service. Publishing never
raises into the job.
"""

from typing import Protocol
import logging

from core.redis import EphemeralStore
from schemas.events import ProgressEvent

logger = logging.getLogger(__name__)


def progress_channel(job_id: str) -> str:
    return f"job_progress:{job_id}"


class ProgressEmitter(Protocol):
    async def emit(self, event: ProgressEvent) -> None: ...


class RedisProgressEmitter:
    def __init__(self, store: EphemeralStore):
        self.store = store

    async def emit(self, event: ProgressEvent) -> None:
        try:
            await self.store.publish(progress_channel(event.job_id), event.to_json())
        except Exception as e:
            logger.debug(f"Dropped progress event for job {event.job_id}: {e}")
