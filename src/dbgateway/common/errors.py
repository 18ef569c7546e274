from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Standardized error codes for the gateway."""
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CONNECTION_NOT_FOUND = "CONNECTION_NOT_FOUND"
    CONNECTION_INACTIVE = "CONNECTION_INACTIVE"
    POOL_EXHAUSTED = "POOL_EXHAUSTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NATIVE_ENGINE_ERROR = "NATIVE_ENGINE_ERROR"
    QUERY_TIMEOUT = "QUERY_TIMEOUT"
    QUERY_CANCELLED = "QUERY_CANCELLED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


class GatewayError(Exception):
    """Base class for all errors raised by the gateway.

    Attributes:
        message (str): Human-readable error message.
        error_code (ErrorCode): The standardized error code.
    """

    error_code: ErrorCode = ErrorCode.EXECUTION_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    def __str__(self) -> str:
        return self.message


class ConfigurationError(GatewayError):
    """A required connection setting is missing or malformed."""

    error_code = ErrorCode.CONFIGURATION_ERROR


class NotFoundError(GatewayError):
    """The connection id is not registered."""

    error_code = ErrorCode.CONNECTION_NOT_FOUND

    def __init__(self, connection_id: str):
        super().__init__(f"Connection {connection_id} not found")
        self.connection_id = connection_id


class PoolExhaustedError(GatewayError):
    """The engine kind has reached its concurrent-connection ceiling."""

    error_code = ErrorCode.POOL_EXHAUSTED

    def __init__(self, engine: str, max_connections: int):
        super().__init__(
            f"Maximum connections reached for {engine} ({max_connections})"
        )
        self.engine = engine
        self.max_connections = max_connections


class QueryValidationError(GatewayError):
    """The query was rejected before it reached the engine."""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, messages, warnings=None):
        self.messages = list(messages)
        self.warnings = list(warnings or [])
        super().__init__(f"Query validation failed: {', '.join(self.messages)}")


class NativeEngineError(GatewayError):
    """Wraps a driver failure. The message always starts with the engine label."""

    error_code = ErrorCode.NATIVE_ENGINE_ERROR

    def __init__(self, engine_label: str, action: str, cause: BaseException):
        super().__init__(f"{engine_label} {action} failed: {cause}")
        self.engine_label = engine_label
        self.__cause__ = cause


class QueryTimeoutError(GatewayError, TimeoutError):
    """The query did not settle before its deadline."""

    error_code = ErrorCode.QUERY_TIMEOUT

    def __init__(self, timeout_ms: int):
        super().__init__(f"Query timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
