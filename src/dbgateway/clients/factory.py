from dbgateway.clients.base import EngineClient
from dbgateway.clients.mongodb import MongoDBClient
from dbgateway.clients.mysql import MySQLClient
from dbgateway.clients.postgres import PostgreSQLClient
from dbgateway.clients.sqlite import SQLiteClient
from dbgateway.common.errors import ConfigurationError
from dbgateway.models.config import EngineConfig, EngineKind


def create_client(connection_id: str, config: EngineConfig) -> EngineClient:
    """Instantiates the client for the config's engine kind."""
    kind = config.engine_kind
    if kind == EngineKind.MONGODB:
        return MongoDBClient(connection_id, config)
    elif kind == EngineKind.MYSQL:
        return MySQLClient(connection_id, config)
    elif kind == EngineKind.POSTGRESQL:
        return PostgreSQLClient(connection_id, config)
    elif kind == EngineKind.SQLITE:
        return SQLiteClient(connection_id, config)
    raise ConfigurationError(f"Unsupported database type: {kind}")
