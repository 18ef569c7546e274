from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel

from dbgateway.models.config import EngineKind


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Connection(BaseModel):
    """A named connection as seen by callers.

    Returned by create_connection even when the native connect failed, in
    which case status is ``error`` and ``error`` carries the reason.
    """
    id: str
    engine: EngineKind
    status: ConnectionStatus
    error: Optional[str] = None
    connection_time: Optional[datetime] = None
    last_activity: Optional[datetime] = None


class ConnectionInfo(BaseModel):
    id: str
    engine: EngineKind
    status: ConnectionStatus
    error: Optional[str] = None
    connection_time: Optional[datetime] = None
    last_activity: Optional[datetime] = None


class PoolStats(BaseModel):
    active: int
    max: int
