from sqlalchemy import Column, String, Enum, DateTime, UniqueConstraint
from datetime import datetime
from models.base import Base, JSONType, ConnectorStatus, new_uuid


class TenantConnector(Base):
    """
    A configured connection from a tenant to an external platform.

    config holds the connector-specific settings (domain, API key, OAuth
    client credentials, ...) validated against the connector's config fields.
    """
    __tablename__ = "tenant_connectors"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(100), nullable=False, index=True)
    connector_type = Column(String(50), nullable=False)
    name = Column(String(255), nullable=False)
    config = Column(JSONType, nullable=False, default=dict)
    status = Column(Enum(ConnectorStatus), nullable=False, default=ConnectorStatus.ACTIVE)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tenant_connector_name"),
    )
