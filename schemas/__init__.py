"""
Pydantic schemas.

Modules:
    api: HTTP request/response models (jobs, connectors, health)
    connectors: The connector capability contract (options, pages, load outcomes, metadata)
    events: Progress events broadcast while jobs run
"""
