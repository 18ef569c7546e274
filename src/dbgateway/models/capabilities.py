from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict

from dbgateway.models.config import EngineKind


class EngineCapabilities(BaseModel):
    """What an engine kind supports natively.

    ``server_max_connections`` is the engine server's own default connection
    limit (1 for SQLite's single writer). It is informational; the gateway's
    per-engine ceiling is ``max_connections_per_engine`` in settings.
    """

    model_config = ConfigDict(frozen=True)

    supports_transactions: bool = True
    supports_joins: bool = True
    supports_indexes: bool = True
    supports_views: bool = True
    supports_stored_procedures: bool = False
    supports_triggers: bool = True
    supports_full_text_search: bool = True
    supports_json: bool = True
    supports_arrays: bool = False
    server_max_connections: Optional[int] = None
    max_query_length: Optional[int] = None


DATABASE_CAPABILITIES: Dict[EngineKind, EngineCapabilities] = {
    # Joins via $lookup, triggers via change streams.
    EngineKind.MONGODB: EngineCapabilities(
        supports_arrays=True,
        server_max_connections=1000,
    ),
    EngineKind.MYSQL: EngineCapabilities(
        supports_stored_procedures=True,
        server_max_connections=151,
        max_query_length=1024 * 1024,
    ),
    EngineKind.POSTGRESQL: EngineCapabilities(
        supports_stored_procedures=True,
        supports_arrays=True,
        server_max_connections=100,
    ),
    # Single writer.
    EngineKind.SQLITE: EngineCapabilities(
        server_max_connections=1,
        max_query_length=1000000,
    ),
}


def get_capabilities(engine: EngineKind) -> EngineCapabilities:
    return DATABASE_CAPABILITIES[EngineKind(engine)]
