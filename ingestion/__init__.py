"""
Job pipeline components for service-management data migration.

Modules:
    state: Job status state machine
    store: Persistence of jobs, batches, load results and timeline events
    queue: Durable leased job queue
    rate_limiter: Per-tenant sliding-window limiter and 429 circuit breaker
    cancellation: Cancellation oracle and per-run tokens
    progress: Progress event broadcasting
    orchestrator: Drives a job through extract, transform and load
    worker: Claims queue messages and runs the orchestrator
    service: Job submission, lookup and cancellation for the API
    scheduler: APScheduler retention sweep
    bootstrap: Component wiring for the API and worker processes

Subpackages:
    connectors: Platform connectors (Freshservice, ManageEngine SDP)

Architecture:
    A job moves QUEUED -> EXTRACTING -> DATA_READY -> LOADING -> COMPLETED,
    with FAILED and CANCELLED reachable from any non-terminal status.
    EXTRACTION jobs stop at DATA_READY; LOADING jobs load the batches of
    an earlier job; MIGRATION jobs do both.

Error Handling:
    All components raise exceptions from core.exceptions. Each carries a
    code persisted on failed jobs and a retriable flag the queue uses to
    decide on redelivery.
"""
