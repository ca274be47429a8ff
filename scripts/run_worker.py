"""
Run a job worker until SIGINT/SIGTERM
"""

import asyncio
import logging
import os
import signal
import sys

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from ingestion.bootstrap import build_components
from ingestion.worker import JobWorker

logger = logging.getLogger(__name__)


async def run_worker():
    components = build_components(settings)
    worker = JobWorker(
        components.queue,
        components.orchestrator,
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await worker.run_forever(stop_event)
    finally:
        await components.close()


if __name__ == "__main__":
    setup_logging("worker")
    try:
        asyncio.run(run_worker())
    except Exception as e:
        logger.error(f"Worker crashed: {e}")
        sys.exit(1)
