from .gateway import DatabaseGateway
from .common.errors import (
    ErrorCode,
    GatewayError,
    ConfigurationError,
    NotFoundError,
    PoolExhaustedError,
    QueryValidationError,
    NativeEngineError,
    QueryTimeoutError,
)
from .models import (
    EngineKind,
    Connection,
    ConnectionStatus,
    QueryOptions,
    QueryRequest,
    QueryResult,
    ValidationResult,
    DatabaseSchema,
    parse_engine_config,
    load_connection_configs,
)
from .services import (
    ConnectionService,
    QueryService,
    QueryServiceConfig,
    SchemaService,
    SchemaServiceConfig,
)
