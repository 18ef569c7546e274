from __future__ import annotations

import pathlib
from typing import Dict, Optional, Union

from dbgateway.common.logger import get_logger
from dbgateway.models.config import load_connection_configs
from dbgateway.models.connection import Connection
from dbgateway.services.connection import ConnectionService
from dbgateway.services.query import QueryService, QueryServiceConfig
from dbgateway.services.schema import SchemaService, SchemaServiceConfig

logger = get_logger(__name__)


class DatabaseGateway:
    """
    Owns the connection, schema and query services for one process.

    Services are built once from GatewaySettings (or explicit configs) and
    exposed as attributes.

    Attributes:
        settings (GatewaySettings): The settings the services were built from.
        connections (ConnectionService): Named connection registry.
        schemas (SchemaService): Cached schema introspection.
        queries (QueryService): Query execution, validation and history.
    """

    def __init__(
        self,
        settings=None,
        query_config: Optional[QueryServiceConfig] = None,
        schema_config: Optional[SchemaServiceConfig] = None,
    ):
        if settings is None:
            from dbgateway.common.settings import settings
        self.settings = settings

        self.connections = ConnectionService(
            max_connections_per_engine=settings.max_connections_per_engine,
            max_workers=settings.query_workers,
        )
        self.schemas = SchemaService(
            self.connections, schema_config or SchemaServiceConfig.from_settings(settings)
        )
        self.queries = QueryService(
            self.connections,
            self.schemas,
            query_config or QueryServiceConfig.from_settings(settings),
        )
        self._closed = False

    @classmethod
    def from_config_file(cls, path: Union[str, pathlib.Path], settings=None, **kwargs) -> "DatabaseGateway":
        """Builds a gateway and opens every connection listed in a YAML file."""
        gateway = cls(settings=settings, **kwargs)
        gateway.open_connections(load_connection_configs(path))
        return gateway

    @classmethod
    def from_settings(cls, settings=None, **kwargs) -> "DatabaseGateway":
        """Builds a gateway, opening the connections file named in settings if any."""
        gateway = cls(settings=settings, **kwargs)
        path = gateway.settings.connections_config_path
        if path:
            gateway.open_connections(load_connection_configs(path))
        return gateway

    def open_connections(self, configs) -> Dict[str, Connection]:
        opened = {}
        for connection_id, config in configs.items():
            connection = self.connections.create_connection(connection_id, config)
            if connection.error:
                logger.warning(f"Connection {connection_id} opened with error: {connection.error}")
            opened[connection_id] = connection
        return opened

    def close(self) -> None:
        """Cancels running queries, stops timers and disconnects everything."""
        if self._closed:
            return
        self._closed = True
        self.queries.close()
        self.schemas.close()
        self.connections.disconnect_all()

    def __enter__(self) -> "DatabaseGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
