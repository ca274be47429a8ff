"""
Queue worker: claims job messages and hands them to the orchestrator.

Each claimed message runs in its own task, bounded by a semaphore. While a
job runs, a heartbeat renews the lease and picks up cancellation markers
set on the message.
"""

from typing import Optional, Set
import asyncio
import logging
import socket
import uuid

from core.config import settings
from core.exceptions import BridgeException, JobCancelledError
from ingestion.orchestrator import JobOrchestrator
from ingestion.queue import JobMessage, SqlAlchemyJobQueue

logger = logging.getLogger(__name__)


class JobWorker:
    def __init__(
        self,
        queue: SqlAlchemyJobQueue,
        orchestrator: JobOrchestrator,
        concurrency: int = settings.WORKER_CONCURRENCY,
        poll_interval: float = settings.WORKER_POLL_INTERVAL_SECONDS,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tasks: Set[asyncio.Task] = set()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set, then wait for in-flight jobs."""
        logger.info(f"Worker {self.worker_id} started (concurrency={self.concurrency})")

        while not stop_event.is_set():
            await self._slots.acquire()
            try:
                message = await self.queue.claim(self.worker_id)
            except Exception as e:
                logger.error(f"Worker {self.worker_id}: claim failed: {e}")
                message = None

            if message is None:
                self._slots.release()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            task = asyncio.create_task(self._run_slot(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            logger.info(f"Worker {self.worker_id}: waiting for {len(self._tasks)} running jobs")
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info(f"Worker {self.worker_id} stopped")

    async def process_next(self) -> bool:
        """Claim and fully process one message; False if the queue was empty."""
        message = await self.queue.claim(self.worker_id)
        if message is None:
            return False
        await self._process(message)
        return True

    async def _run_slot(self, message: JobMessage) -> None:
        try:
            await self._process(message)
        finally:
            self._slots.release()

    async def _process(self, message: JobMessage) -> None:
        if message.is_stalled:
            logger.error(f"Job {message.job_id} stalled after {message.attempts - 1} deliveries")
            await self.orchestrator.fail_stalled(message)
            await self.queue.fail(message, "Job stalled", retriable=False)
            return

        heartbeat = asyncio.create_task(self._heartbeat(message))
        try:
            await self.orchestrator.run(message)
        except JobCancelledError as e:
            await self.queue.fail(message, e.message, retriable=False)
        except BridgeException as e:
            await self.queue.fail(message, f"{e.code}: {e.message}", retriable=e.retriable)
        except Exception as e:
            logger.exception(f"Unhandled error processing job {message.job_id}")
            await self.queue.fail(message, str(e), retriable=True)
        else:
            await self.queue.complete(message)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _heartbeat(self, message: JobMessage) -> None:
        interval = max(self.queue.lease_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            try:
                if await self.queue.renew(message):
                    logger.info(f"Job {message.job_id}: cancellation marker seen on lease renewal")
            except Exception as e:
                logger.warning(f"Lease renewal failed for job {message.job_id}: {e}")
