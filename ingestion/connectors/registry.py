"""
Connector registry keyed by connector type string.
"""

from typing import Any, Dict, List, Type
import logging

from core.exceptions import ValidationError
from ingestion.connectors.base import BaseConnector
from ingestion.connectors.freshservice import FreshserviceConnector
from ingestion.connectors.manageengine_sdp import ManageEngineSdpConnector
from schemas.connectors import ConnectorMetadata

logger = logging.getLogger(__name__)


class ConnectorRegistry:
    """Maps "FRESHSERVICE", "MANAGEENGINE_SDP", ... to connector classes."""

    def __init__(self):
        self._connectors: Dict[str, Type[BaseConnector]] = {}

    def register(self, connector_cls: Type[BaseConnector]) -> None:
        key = connector_cls.connector_type.upper()
        if key in self._connectors:
            logger.warning(f"Replacing registered connector for {key}")
        self._connectors[key] = connector_cls

    def get(self, connector_type: str) -> Type[BaseConnector]:
        try:
            return self._connectors[connector_type.upper()]
        except KeyError:
            raise ValidationError(
                f"Unsupported connector type: {connector_type}",
                context={"supported": self.supported_types()}
            )

    def is_supported(self, connector_type: str) -> bool:
        return connector_type.upper() in self._connectors

    def supported_types(self) -> List[str]:
        return sorted(self._connectors)

    def metadata(self, connector_type: str) -> ConnectorMetadata:
        return self.get(connector_type).metadata()

    def all_metadata(self) -> List[ConnectorMetadata]:
        return [self._connectors[key].metadata() for key in self.supported_types()]

    def validate_config(self, connector_type: str, config: Dict[str, Any]) -> List[str]:
        return self.get(connector_type).validate_config(config)

    def create(self, connector_type: str, config: Dict[str, Any], **kwargs) -> BaseConnector:
        """
        Instantiate a connector.

        Keyword arguments (connector_id, tenant_id, rate_limiter,
        cancellation, transport, sleep, ...) are passed through.
        """
        connector_cls = self.get(connector_type)
        return connector_cls(config, **kwargs)


def build_default_registry() -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register(FreshserviceConnector)
    registry.register(ManageEngineSdpConnector)
    return registry
