from .config import (
    EngineKind,
    EngineConfig,
    MongoConnectionConfig,
    MySQLConnectionConfig,
    PostgreSQLConnectionConfig,
    SQLiteConnectionConfig,
    DEFAULT_PORTS,
    parse_engine_config,
    build_connection_url,
    load_connection_configs,
)
from .capabilities import EngineCapabilities, DATABASE_CAPABILITIES, get_capabilities
from .connection import Connection, ConnectionInfo, ConnectionStatus, PoolStats
from .query import (
    ColumnMetadata,
    QueryRequest,
    QueryResult,
    QueryOptions,
    ValidationError,
    ValidationWarning,
    ValidationResult,
    QueryPerformanceMetric,
    QueryHistoryEntry,
)
from .schema import (
    ColumnSchema,
    IndexSchema,
    ForeignKeySchema,
    TableSchema,
    DatabaseSchema,
    SchemaCacheEntry,
)
