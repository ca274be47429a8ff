"""
Platform connectors.

Modules:
    base: BaseConnector contract (HTTP, pagination, detail batches, loading)
    freshservice: Freshservice API v2
    manageengine_sdp: ManageEngine ServiceDesk Plus API v3
    registry: Lookup of connector classes by type string
"""

from ingestion.connectors.base import BaseConnector
from ingestion.connectors.registry import ConnectorRegistry, build_default_registry

__all__ = ["BaseConnector", "ConnectorRegistry", "build_default_registry"]
