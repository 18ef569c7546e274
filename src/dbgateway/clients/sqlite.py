from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.pool import StaticPool

from dbgateway.clients.sqlalchemy import BaseSQLAlchemyClient
from dbgateway.common.errors import ConfigurationError
from dbgateway.models.config import EngineKind
from dbgateway.models.query import ColumnMetadata


def sqlite_type_of(value: Any) -> str:
    """Infers a storage class from a Python value."""
    if value is None:
        return "NULL"
    if isinstance(value, (bool, int)):
        return "INTEGER"
    if isinstance(value, float):
        return "REAL"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "BLOB"
    return "TEXT"


class SQLiteClient(BaseSQLAlchemyClient):
    """File-backed SQLite.

    Result column types are inferred from the first row, since the driver
    reports no types for query results.
    """

    kind = EngineKind.SQLITE
    label = "SQLite"

    def validate_config(self) -> None:
        super().validate_config()
        if not self.config.file_path and not self.config.is_memory():
            raise ConfigurationError("SQLite file path is required")

    def _engine_kwargs(self) -> Dict[str, Any]:
        connect_args: Dict[str, Any] = {"check_same_thread": False}
        busy_timeout = self.config.busy_timeout or self.config.timeout
        if busy_timeout:
            connect_args["timeout"] = busy_timeout / 1000
        kwargs: Dict[str, Any] = {"connect_args": connect_args}
        if self.config.is_memory():
            kwargs["poolclass"] = StaticPool
        return kwargs

    def _cancel_callback(self, dbapi_conn) -> Optional[Callable[[], None]]:
        return dbapi_conn.interrupt

    def _refine_columns(self, columns: List[ColumnMetadata], rows: List[Dict[str, Any]]) -> List[ColumnMetadata]:
        if not rows:
            return columns
        first = rows[0]
        return [
            col.model_copy(update={"type": sqlite_type_of(first.get(col.name))})
            for col in columns
        ]

    def _list_databases(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.exec_driver_sql("PRAGMA database_list").fetchall()
        return [row[1] for row in rows]
