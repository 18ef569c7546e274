from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pymysql.constants import FIELD_TYPE, FLAG

from dbgateway.clients.factory import create_client
from dbgateway.clients.mongodb import MongoDBClient, mongo_type_of
from dbgateway.clients.mysql import MySQLClient, column_from_field
from dbgateway.clients.postgres import PostgreSQLClient, pg_type_name
from dbgateway.clients.sqlite import SQLiteClient, sqlite_type_of
from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.errors import ConfigurationError, ErrorCode, NativeEngineError
from dbgateway.models.config import (
    MongoConnectionConfig,
    MySQLConnectionConfig,
    PostgreSQLConnectionConfig,
    SQLiteConnectionConfig,
)
from dbgateway.models.connection import ConnectionStatus
from dbgateway.models.query import QueryRequest


def _mock_engine():
    """Returns a SQLAlchemy engine mock whose connect() yields one shared connection."""
    engine = MagicMock()
    conn = MagicMock()
    engine.connect.return_value.__enter__.return_value = conn
    return engine, conn


@pytest.mark.parametrize(
    "client_cls, config",
    [
        (MySQLClient, MySQLConnectionConfig(host="h")),
        (PostgreSQLClient, PostgreSQLConnectionConfig(host="h", database="")),
        (SQLiteClient, SQLiteConnectionConfig(file_path="/tmp/x.db")),
        (SQLiteClient, SQLiteConnectionConfig(database="main")),
    ],
)
def test_connect_validates_config_before_io(monkeypatch, client_cls, config):
    # Validates fail-fast config checks because no native call may run on bad config.
    # Arrange
    factory = MagicMock()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", factory)
    client = client_cls("c1", config)

    # Act / Assert
    with pytest.raises(ConfigurationError):
        client.connect()
    factory.assert_not_called()
    assert client.status == ConnectionStatus.DISCONNECTED


def test_mongo_connect_requires_database(monkeypatch):
    # Validates the document store follows the same config contract.
    # Arrange
    mongo_cls = MagicMock()
    monkeypatch.setattr("dbgateway.clients.mongodb.MongoClient", mongo_cls)

    # Act / Assert
    with pytest.raises(ConfigurationError):
        MongoDBClient("m1", MongoConnectionConfig(host="h")).connect()
    mongo_cls.assert_not_called()


def test_native_connect_failure_records_error_and_reraises(monkeypatch):
    # Validates error capture because the connection service reports it to callers.
    # Arrange
    engine = MagicMock()
    engine.connect.side_effect = OSError("connection refused")
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    client = MySQLClient("c1", MySQLConnectionConfig(host="h", database="shop"))

    # Act
    with pytest.raises(NativeEngineError) as exc_info:
        client.connect()

    # Assert
    assert str(exc_info.value) == "MySQL connection failed: connection refused"
    assert client.status == ConnectionStatus.ERROR
    assert client.error == "MySQL connection failed: connection refused"
    engine.dispose.assert_called_once()


def test_connect_disconnect_cycle_is_idempotent(monkeypatch):
    # Validates lifecycle bookkeeping because status must track the native handle.
    # Arrange
    engine, _ = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    client = PostgreSQLClient("p1", PostgreSQLConnectionConfig(host="h", database="db"))

    # Act
    client.connect()
    connected_status = client.status
    client.disconnect()
    client.disconnect()

    # Assert
    assert connected_status == ConnectionStatus.CONNECTED
    assert client.connection_time is not None
    assert client.status == ConnectionStatus.DISCONNECTED
    assert client.error is None
    engine.dispose.assert_called_once()


def test_test_connection_never_raises(monkeypatch):
    # Validates the boolean contract because health checks fan out over every client.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    client = MySQLClient("c1", MySQLConnectionConfig(host="h", database="shop"))
    client.connect()
    conn.execute.side_effect = RuntimeError("gone away")

    # Act
    healthy = client.test_connection()

    # Assert
    assert healthy is False
    assert client.status == ConnectionStatus.ERROR
    assert "gone away" in client.error
    assert MySQLClient("x", MySQLConnectionConfig(database="d")).test_connection() is False


def test_execute_failure_is_returned_not_raised(monkeypatch):
    # Validates value-returned errors because batch callers keep iterating.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    client = PostgreSQLClient("p1", PostgreSQLConnectionConfig(host="h", database="db"))
    client.connect()
    conn.exec_driver_sql.side_effect = RuntimeError('relation "nope" does not exist')

    # Act
    result = client.execute_query(QueryRequest(connection_id="p1", query="SELECT 1", parameters=[1]))

    # Assert
    assert result.error == 'PostgreSQL query execution failed: relation "nope" does not exist'
    assert result.data == []
    assert result.columns == []
    assert result.total_rows == 0


def test_mysql_execute_maps_field_flags(monkeypatch):
    # Validates flag bit tests because nullability and keys come from the driver bitmask.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    result = MagicMock()
    result.returns_rows = True
    result.keys.return_value = ["id", "name"]
    result.fetchall.return_value = [(1, "Ada"), (2, "Linus")]
    result.cursor._result.fields = [
        SimpleNamespace(
            name="id", type_code=FIELD_TYPE.LONG, length=11, charsetnr=63,
            flags=FLAG.NOT_NULL | FLAG.PRI_KEY | FLAG.AUTO_INCREMENT | FLAG.UNSIGNED,
        ),
        SimpleNamespace(name="name", type_code=FIELD_TYPE.VAR_STRING, length=255, charsetnr=45, flags=0),
    ]
    conn.exec_driver_sql.return_value = result
    client = MySQLClient("c1", MySQLConnectionConfig(host="h", database="shop"))
    client.connect()

    # Act
    out = client.execute_query(
        QueryRequest(connection_id="c1", query="SELECT id, name FROM users WHERE id > %s", parameters=[0])
    )

    # Assert
    conn.exec_driver_sql.assert_called_with("SELECT id, name FROM users WHERE id > %s", (0,))
    assert out.error is None
    assert out.data == [{"id": 1, "name": "Ada"}, {"id": 2, "name": "Linus"}]
    assert out.total_rows == 2
    id_col, name_col = out.columns
    assert (id_col.type, id_col.nullable, id_col.primary_key, id_col.auto_increment, id_col.unsigned) == (
        "LONG", False, True, True, True,
    )
    assert (name_col.nullable, name_col.primary_key, name_col.zerofill) == (True, False, False)


def test_column_from_field_reads_zerofill():
    # Validates the zerofill bit separately because it shares a byte with unsigned.
    # Act
    column = column_from_field(
        SimpleNamespace(name="n", type_code=FIELD_TYPE.LONG, length=5, charsetnr=63, flags=FLAG.ZEROFILL)
    )

    # Assert
    assert column.zerofill is True
    assert column.unsigned is False


def test_mutating_statement_reports_affected_rows(monkeypatch):
    # Validates affected-row reporting because writes return no result set.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    no_params_conn = MagicMock()
    conn.execution_options.return_value = no_params_conn
    result = MagicMock(returns_rows=False, rowcount=4)
    no_params_conn.exec_driver_sql.return_value = result
    client = MySQLClient("c1", MySQLConnectionConfig(host="h", database="shop"))
    client.connect()

    # Act
    out = client.execute_query(QueryRequest(connection_id="c1", query="UPDATE t SET x = 1 WHERE y = 2"))

    # Assert
    conn.execution_options.assert_called_with(no_parameters=True)
    assert out.affected_rows == 4
    assert out.data == []
    conn.commit.assert_called()


def test_postgres_registers_backend_cancel(monkeypatch):
    # Validates wiring of the cancellation token because timeouts must stop server work.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    dbapi_conn = conn.connection.dbapi_connection
    token = CancellationToken()

    def run(*args, **kwargs):
        token.cancel()
        raise RuntimeError("canceling statement due to user request")

    conn.exec_driver_sql.side_effect = run
    client = PostgreSQLClient("p1", PostgreSQLConnectionConfig(host="h", database="db"))
    client.connect()

    # Act
    out = client.execute_query(
        QueryRequest(connection_id="p1", query="SELECT pg_sleep(10)", parameters=[1]), token
    )

    # Assert
    dbapi_conn.cancel.assert_called_once()
    assert "canceling statement" in out.error


def test_type_mappers():
    # Validates the per-engine type tables because column metadata depends on them.
    # Assert
    assert pg_type_name(23) == "integer"
    assert pg_type_name(1184) == "timestamptz"
    assert pg_type_name(99999) == "unknown"
    assert [sqlite_type_of(v) for v in (None, True, 3, 1.5, "a", b"x")] == [
        "NULL", "INTEGER", "INTEGER", "REAL", "TEXT", "BLOB",
    ]
    assert [mongo_type_of(v) for v in (None, [1], {"a": 1}, "s", True, 3, 2.5)] == [
        "null", "array", "object", "string", "boolean", "int", "double",
    ]


@pytest.mark.parametrize(
    "type_code, expected",
    [(FIELD_TYPE.TINY, "TINY"), (FIELD_TYPE.ENUM, "ENUM"), (FIELD_TYPE.LONG, "LONG")],
)
def test_mysql_type_names_ignore_driver_aliases(type_code, expected):
    # Validates MySQL type names because pymysql aliases share codes with real types.
    # Act
    column = column_from_field(
        SimpleNamespace(name="c", type_code=type_code, length=1, charsetnr=63, flags=0)
    )

    # Assert
    assert column.type == expected


def test_cancelled_token_skips_dispatch(monkeypatch):
    # Validates that a query cancelled before it starts never reaches the engine.
    # Arrange
    engine, conn = _mock_engine()
    monkeypatch.setattr("dbgateway.clients.sqlalchemy.create_engine", lambda *a, **k: engine)
    client = MySQLClient("c1", MySQLConnectionConfig(host="h", database="shop"))
    client.connect()
    conn.exec_driver_sql.reset_mock()
    token = CancellationToken()
    token.cancel()

    # Act
    result = client.execute_query(
        QueryRequest(connection_id="c1", query="DELETE FROM t WHERE id = 1"), token
    )

    # Assert
    assert result.error == "Query cancelled"
    assert result.metadata["error_code"] == ErrorCode.QUERY_CANCELLED.value
    conn.exec_driver_sql.assert_not_called()


def _mongo(monkeypatch):
    mongo_cls = MagicMock()
    monkeypatch.setattr("dbgateway.clients.mongodb.MongoClient", mongo_cls)
    native = mongo_cls.return_value
    collection = native.__getitem__.return_value.__getitem__.return_value
    client = MongoDBClient("m1", MongoConnectionConfig(host="mongo", database="app"))
    client.connect()
    return native, collection, client


def test_mongo_connect_pings_server(monkeypatch):
    # Validates eager connect because pymongo connects lazily by default.
    # Act
    native, _, client = _mongo(monkeypatch)

    # Assert
    native.admin.command.assert_called_with("ping")
    assert client.status == ConnectionStatus.CONNECTED


def test_mongo_find_applies_request_window_and_counts_total(monkeypatch):
    # Validates cursor pagination because the document store is never text-rewritten.
    # Arrange
    _, collection, client = _mongo(monkeypatch)
    cursor = collection.find.return_value
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.max_time_ms.return_value = cursor
    cursor.__iter__.return_value = iter([{"_id": 1, "name": "Ada", "tags": []}])
    collection.count_documents.return_value = 42

    # Act
    out = client.execute_query(QueryRequest(
        connection_id="m1",
        query='db.users.find({"active": true}).sort({"name": 1})',
        limit=10,
        offset=20,
        timeout=500,
    ))

    # Assert
    collection.find.assert_called_with({"active": True}, None)
    cursor.sort.assert_called_with([("name", 1)])
    cursor.skip.assert_called_with(20)
    cursor.limit.assert_called_with(10)
    cursor.max_time_ms.assert_called_with(500)
    assert out.total_rows == 42
    assert [(c.name, c.type, c.primary_key) for c in out.columns] == [
        ("_id", "int", True), ("name", "string", False), ("tags", "array", False),
    ]


def test_mongo_bad_syntax_becomes_error_result(monkeypatch):
    # Validates that parse errors follow the never-raise contract.
    # Arrange
    _, _, client = _mongo(monkeypatch)

    # Act
    out = client.execute_query(QueryRequest(connection_id="m1", query="db.users.find({oops"))

    # Assert
    assert out.error.startswith("MongoDB query execution failed:")


def test_schema_failure_is_engine_prefixed(monkeypatch):
    # Validates raised introspection errors because schema calls propagate failures.
    # Arrange
    native, _, client = _mongo(monkeypatch)
    native.list_database_names.side_effect = RuntimeError("not authorized")

    # Act / Assert
    with pytest.raises(NativeEngineError, match="^MongoDB database listing failed: not authorized"):
        client.get_databases()


def test_factory_covers_every_engine():
    # Validates the closed dispatch because each engine kind needs its client.
    # Act
    clients = [
        create_client("a", MongoConnectionConfig(database="x")),
        create_client("b", MySQLConnectionConfig(database="x")),
        create_client("c", PostgreSQLConnectionConfig(database="x")),
        create_client("d", SQLiteConnectionConfig(database="x", file_path=":memory:")),
    ]

    # Assert
    assert [type(c) for c in clients] == [MongoDBClient, MySQLClient, PostgreSQLClient, SQLiteClient]
    assert [c.label for c in clients] == ["MongoDB", "MySQL", "PostgreSQL", "SQLite"]
