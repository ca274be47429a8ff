"""
Cooperative cancellation for running jobs.

The job record is the durable truth; the ephemeral flag and the marker on
the in-flight queue message are fast paths checked first. Long-running code
never polls the database directly: it holds a ``CancellationToken`` and
calls ``raise_if_cancelled`` at every unit-of-work boundary.
"""

from typing import Callable, Dict, Optional, Protocol
import time
import logging

from core.exceptions import JobCancelledError
from core.redis import EphemeralStore
from models.base import JobStatus

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = (JobStatus.CANCELLED, JobStatus.FAILED)


class CancellableMessage(Protocol):
    cancelled: bool


class JobStatusReader(Protocol):
    async def get_job_status(self, job_id: str) -> Optional[JobStatus]: ...


def cancellation_flag_key(job_id: str) -> str:
    return f"job:{job_id}:cancelled"


class CancellationOracle:
    """
    Answers "has this job been cancelled?" cheaply.

    Order of checks:
        1. ephemeral flag
        2. marker on the in-flight queue message
        3. the job record, at most once per ``db_check_interval`` per job

    A positive answer from 2 or 3 sets the flag so later checks stay cheap.
    """

    def __init__(
        self,
        store: EphemeralStore,
        job_store: JobStatusReader,
        flag_ttl_seconds: int = 300,
        db_check_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.job_store = job_store
        self.flag_ttl_seconds = flag_ttl_seconds
        self.db_check_interval = db_check_interval
        self._clock = clock
        self._last_db_check: Dict[str, float] = {}

    async def should_cancel(self, job_id: str, message: Optional[CancellableMessage] = None) -> bool:
        try:
            if await self.store.get(cancellation_flag_key(job_id)) == "true":
                return True
        except Exception as e:
            logger.debug(f"Cancellation flag lookup failed for job {job_id}: {e}")

        if message is not None and getattr(message, "cancelled", False):
            await self.flag(job_id)
            return True

        now = self._clock()
        last = self._last_db_check.get(job_id)
        if last is not None and now - last < self.db_check_interval:
            return False
        self._last_db_check[job_id] = now

        try:
            status = await self.job_store.get_job_status(job_id)
        except Exception as e:
            logger.warning(f"Cancellation status lookup failed for job {job_id}: {e}")
            return False

        if status in CANCELLED_STATUSES:
            await self.flag(job_id)
            return True
        return False

    async def flag(self, job_id: str) -> bool:
        """Set the ephemeral flag; returns False if the store is unavailable."""
        try:
            await self.store.set(cancellation_flag_key(job_id), "true", self.flag_ttl_seconds)
            return True
        except Exception as e:
            logger.warning(f"Failed to set cancellation flag for job {job_id}: {e}")
            return False

    def forget(self, job_id: str) -> None:
        self._last_db_check.pop(job_id, None)

    def token(self, job_id: str, message: Optional[CancellableMessage] = None) -> "CancellationToken":
        return CancellationToken(self, job_id, message)


class CancellationToken:
    """Bound to one job run; passed down to connectors."""

    def __init__(self, oracle: CancellationOracle, job_id: str, message: Optional[CancellableMessage] = None):
        self.oracle = oracle
        self.job_id = job_id
        self.message = message
        self._cancelled = False

    async def is_cancelled(self) -> bool:
        if not self._cancelled:
            self._cancelled = await self.oracle.should_cancel(self.job_id, self.message)
        return self._cancelled

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancelled():
            raise JobCancelledError(
                "Job cancelled by user",
                context={"job_id": self.job_id}
            )


class NeverCancelled:
    """Token stand-in for connector calls made outside a job (connection tests)."""

    async def is_cancelled(self) -> bool:
        return False

    async def raise_if_cancelled(self) -> None:
        return None
