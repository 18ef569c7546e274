from typing import Any, Callable, Dict, List, Optional

from dbgateway.clients.sqlalchemy import BaseSQLAlchemyClient
from dbgateway.models.config import EngineKind
from dbgateway.models.query import ColumnMetadata

PG_TYPE_NAMES = {
    16: "boolean",
    20: "bigint",
    21: "smallint",
    23: "integer",
    25: "text",
    700: "real",
    701: "double precision",
    1043: "varchar",
    1082: "date",
    1114: "timestamp",
    1184: "timestamptz",
    1700: "numeric",
}


def pg_type_name(oid: int) -> str:
    return PG_TYPE_NAMES.get(oid, "unknown")


class PostgreSQLClient(BaseSQLAlchemyClient):
    kind = EngineKind.POSTGRESQL
    label = "PostgreSQL"

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs = super()._engine_kwargs()
        connect_args: Dict[str, Any] = {}
        if self.config.timeout:
            connect_args["connect_timeout"] = max(1, self.config.timeout // 1000)
        if self.config.statement_timeout:
            connect_args["options"] = f"-c statement_timeout={self.config.statement_timeout}"
        if connect_args:
            kwargs["connect_args"] = connect_args
        return kwargs

    def _cancel_callback(self, dbapi_conn) -> Optional[Callable[[], None]]:
        return dbapi_conn.cancel

    def _column_metadata(self, cursor) -> List[ColumnMetadata]:
        # Result descriptions carry type OIDs only; nullability needs the catalog.
        return [
            ColumnMetadata(name=d[0], type=pg_type_name(d[1]), nullable=True, primary_key=False)
            for d in cursor.description or []
        ]

    def _list_databases(self) -> List[str]:
        return self._scalar_list(
            "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
        )

    def _inspect_schema_name(self) -> Optional[str]:
        return self.config.db_schema
