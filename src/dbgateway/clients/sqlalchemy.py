from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import Engine, create_engine, inspect, text

from dbgateway.clients.base import EngineClient
from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.logger import get_logger
from dbgateway.models.config import build_connection_url
from dbgateway.models.query import ColumnMetadata, QueryRequest, QueryResult
from dbgateway.models.schema import ColumnSchema, DatabaseSchema, TableSchema

logger = get_logger(__name__)


class BaseSQLAlchemyClient(EngineClient):
    """
    Base class for the SQL engine clients.
    Implements connection, raw execution and inspector-based schema fetching
    on top of a SQLAlchemy engine. Dialects supply engine options, column
    metadata extraction and statement cancellation.
    """

    def __init__(self, connection_id: str, config):
        super().__init__(connection_id, config)
        self.engine: Optional[Engine] = None

    def _engine_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if self.config.pool_size:
            kwargs["pool_size"] = self.config.pool_size
        return kwargs

    def _has_handle(self) -> bool:
        return self.engine is not None

    def _open(self) -> None:
        engine = create_engine(build_connection_url(self.config), **self._engine_kwargs())
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            engine.dispose()
            raise
        self.engine = engine

    def _close(self) -> None:
        engine, self.engine = self.engine, None
        engine.dispose()

    def _ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def _cancel_callback(self, dbapi_conn) -> Optional[Callable[[], None]]:
        """Returns a callable that aborts the running statement, if the driver can."""
        return None

    def _column_metadata(self, cursor) -> List[ColumnMetadata]:
        return [ColumnMetadata(name=d[0], type="unknown") for d in cursor.description or []]

    def _refine_columns(self, columns: List[ColumnMetadata], rows: List[Dict[str, Any]]) -> List[ColumnMetadata]:
        return columns

    def _execute(self, request: QueryRequest, cancel_token: Optional[CancellationToken]) -> QueryResult:
        with self.engine.connect() as conn:
            cancel = None
            if cancel_token is not None:
                cancel = self._cancel_callback(conn.connection.dbapi_connection)
                if cancel is not None:
                    cancel_token.add_callback(cancel)
            try:
                start = time.perf_counter()
                if request.parameters:
                    result = conn.exec_driver_sql(request.query, tuple(request.parameters))
                else:
                    result = conn.execution_options(no_parameters=True).exec_driver_sql(request.query)

                if result.returns_rows:
                    columns = self._column_metadata(result.cursor)
                    keys = list(result.keys())
                    rows = [dict(zip(keys, row)) for row in result.fetchall()]
                    affected_rows = None
                else:
                    columns = []
                    rows = []
                    affected_rows = result.rowcount
                conn.commit()
                duration = time.perf_counter() - start
            finally:
                if cancel is not None:
                    cancel_token.remove_callback(cancel)

        return QueryResult(
            data=rows,
            total_rows=len(rows) if affected_rows is None else affected_rows,
            execution_time=duration * 1000,
            columns=self._refine_columns(columns, rows),
            affected_rows=affected_rows,
        )

    def _inspect_schema_name(self) -> Optional[str]:
        return None

    def _fetch_schema(self) -> DatabaseSchema:
        inspector = inspect(self.engine)
        schema_name = self._inspect_schema_name()
        tables = []

        names = [(n, "table") for n in inspector.get_table_names(schema=schema_name)]
        names += [(n, "view") for n in inspector.get_view_names(schema=schema_name)]

        for table_name, kind in names:
            try:
                pk_columns = set(
                    inspector.get_pk_constraint(table_name, schema=schema_name).get("constrained_columns") or []
                )
            except Exception as e:
                logger.warning(f"Failed to fetch primary key for {self}: {table_name}: {e}")
                pk_columns = set()

            columns = []
            for col_info in inspector.get_columns(table_name, schema=schema_name):
                columns.append(ColumnSchema(
                    name=col_info["name"],
                    type=str(col_info["type"]),
                    nullable=col_info.get("nullable", True),
                    primary_key=col_info["name"] in pk_columns,
                    auto_increment=col_info.get("autoincrement") is True or None,
                    default_value=str(col_info["default"]) if col_info.get("default") is not None else None,
                    comment=col_info.get("comment"),
                ))

            try:
                tbl_comment = inspector.get_table_comment(table_name, schema=schema_name).get("text")
            except NotImplementedError:
                tbl_comment = None
            except Exception:
                logger.warning(f"Failed to fetch table comment for {self}: {table_name}")
                tbl_comment = None

            tables.append(TableSchema(name=table_name, type=kind, columns=columns, comment=tbl_comment))

        return DatabaseSchema(name=self.config.database, engine=self.kind, tables=tables)

    def _list_tables(self, database: Optional[str]) -> List[str]:
        inspector = inspect(self.engine)
        return inspector.get_table_names(schema=database or self._inspect_schema_name())

    def _scalar_list(self, sql: str) -> List[str]:
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(text(sql)).fetchall()]
