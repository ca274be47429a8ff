"""
Logging configuration
"""

import logging
import sys
from core.config import settings


def setup_logging(component: str = "api"):
    """
    Configure root logging for one process.

    The component name (api, worker, init_db) is part of every line so
    API and worker output can share a log sink.
    """
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format=f"%(asctime)s | %(levelname)-8s | {component} | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Per-statement and per-request chatter
    for noisy in ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured for {component} at {settings.LOG_LEVEL} level ({settings.ENVIRONMENT})")
