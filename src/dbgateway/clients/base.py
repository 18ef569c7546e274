from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.errors import ConfigurationError, ErrorCode, NativeEngineError
from dbgateway.common.logger import get_logger
from dbgateway.models.capabilities import EngineCapabilities, get_capabilities
from dbgateway.models.config import EngineConfig, EngineKind
from dbgateway.models.connection import ConnectionStatus
from dbgateway.models.query import QueryRequest, QueryResult
from dbgateway.models.schema import DatabaseSchema

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EngineClient(ABC):
    """Canonical interface every engine client implements.

    A client owns exactly one native handle. ``connect`` validates the
    config before any I/O and ``execute_query`` never raises: driver
    failures come back in ``QueryResult.error``.
    """

    kind: EngineKind
    label: str

    def __init__(self, connection_id: str, config: EngineConfig):
        self.connection_id = connection_id
        self.config = config
        self.status = ConnectionStatus.DISCONNECTED
        self.error: Optional[str] = None
        self.connection_time: Optional[datetime] = None
        self.last_activity: Optional[datetime] = None

    def __str__(self):
        return f"{self.connection_id} ({self.kind.value})"

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def validate_config(self) -> None:
        """Fails fast on missing required settings."""
        if not self.config.database:
            raise ConfigurationError(f"{self.label} database name is required")

    def connect(self) -> None:
        self.validate_config()

        self.status = ConnectionStatus.CONNECTING
        self.error = None
        try:
            self._open()
        except Exception as e:
            err = NativeEngineError(self.label, "connection", e)
            self._set_error(err.message)
            logger.error(f"Failed to connect {self}: {e}")
            raise err from e

        self.status = ConnectionStatus.CONNECTED
        self.connection_time = utcnow()
        self.last_activity = self.connection_time
        logger.info(f"Connected {self}")

    def disconnect(self) -> None:
        try:
            if self._has_handle():
                self._close()
        except Exception as e:
            raise NativeEngineError(self.label, "disconnect", e) from e
        finally:
            self.status = ConnectionStatus.DISCONNECTED
            self.error = None

    def test_connection(self) -> bool:
        if not self._has_handle():
            return False
        try:
            self._ping()
        except Exception as e:
            self._set_error(f"{self.label} test connection failed: {e}")
            return False
        self._touch()
        return True

    def execute_query(
        self, request: QueryRequest, cancel_token: Optional[CancellationToken] = None
    ) -> QueryResult:
        if not self.is_connected:
            return QueryResult.failure(f"{self.label} query execution failed: not connected")
        if cancel_token is not None and cancel_token.is_cancelled():
            return QueryResult.failure("Query cancelled", error_code=ErrorCode.QUERY_CANCELLED.value)
        try:
            result = self._execute(request, cancel_token)
        except Exception as e:
            logger.warning(f"Query failed on {self}: {e}")
            return QueryResult.failure(f"{self.label} query execution failed: {e}")
        self._touch()
        return result

    def get_schema(self) -> DatabaseSchema:
        self._require_handle("schema retrieval")
        try:
            schema = self._fetch_schema()
        except Exception as e:
            raise NativeEngineError(self.label, "schema retrieval", e) from e
        self._touch()
        return schema

    def get_databases(self) -> List[str]:
        self._require_handle("database listing")
        try:
            databases = self._list_databases()
        except Exception as e:
            raise NativeEngineError(self.label, "database listing", e) from e
        self._touch()
        return databases

    def get_tables(self, database: Optional[str] = None) -> List[str]:
        self._require_handle("table listing")
        try:
            tables = self._list_tables(database)
        except Exception as e:
            raise NativeEngineError(self.label, "table listing", e) from e
        self._touch()
        return tables

    def get_capabilities(self) -> EngineCapabilities:
        return get_capabilities(self.kind)

    def _touch(self) -> None:
        self.last_activity = utcnow()

    def _set_error(self, message: str) -> None:
        self.status = ConnectionStatus.ERROR
        self.error = message

    def _require_handle(self, action: str) -> None:
        if not self._has_handle():
            raise NativeEngineError(self.label, action, RuntimeError("not connected"))

    @abstractmethod
    def _has_handle(self) -> bool:
        """Whether a native handle is currently open."""

    @abstractmethod
    def _open(self) -> None:
        """Open the native handle and prove it works."""

    @abstractmethod
    def _close(self) -> None:
        """Release the native handle."""

    @abstractmethod
    def _ping(self) -> None:
        """Cheapest round trip the engine offers."""

    @abstractmethod
    def _execute(
        self, request: QueryRequest, cancel_token: Optional[CancellationToken]
    ) -> QueryResult:
        """Run the raw query text natively and time the native call."""

    @abstractmethod
    def _fetch_schema(self) -> DatabaseSchema:
        pass

    @abstractmethod
    def _list_databases(self) -> List[str]:
        pass

    @abstractmethod
    def _list_tables(self, database: Optional[str]) -> List[str]:
        pass
