from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class JobType(str, enum.Enum):
    """What a job does with the source and destination connectors"""
    EXTRACTION = "EXTRACTION"
    LOADING = "LOADING"
    MIGRATION = "MIGRATION"


class JobStatus(str, enum.Enum):
    """Job lifecycle status"""
    QUEUED = "QUEUED"
    EXTRACTING = "EXTRACTING"
    DATA_READY = "DATA_READY"
    LOADING = "LOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ConnectorType(str, enum.Enum):
    """External platforms the bridge can talk to"""
    FRESHSERVICE = "FRESHSERVICE"
    MANAGEENGINE_SDP = "MANAGEENGINE_SDP"
    SERVICENOW = "SERVICENOW"
    ZENDESK = "ZENDESK"


class ConnectorStatus(str, enum.Enum):
    """Tenant connector status"""
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ERROR = "ERROR"


class QueueMessageStatus(str, enum.Enum):
    """Delivery state of a queue message"""
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
