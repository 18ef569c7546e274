from .connection import ConnectionService
from .query import QueryService, QueryServiceConfig
from .schema import SchemaService, SchemaServiceConfig

__all__ = [
    "ConnectionService",
    "QueryService",
    "QueryServiceConfig",
    "SchemaService",
    "SchemaServiceConfig",
]
