"""
Core utilities and configuration for the Service Bridge pipeline.

Modules:
    config: Application configuration and environment variable management
    database: Database engine and session management
    exceptions: Exception hierarchy with error codes and retry semantics
    logging: Logging configuration
    redis: Ephemeral key/value store (rate-limit windows, flags, pub/sub)

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import ExtractionError, JobCancelledError
    from core.logging import setup_logging
"""
