import sqlite3
import threading
from unittest.mock import MagicMock

import pytest

# Configures logging once, before any caplog handler is installed.
import dbgateway.common.settings  # noqa: F401
from dbgateway.common.settings import GatewaySettings
from dbgateway.models.config import EngineKind, SQLiteConnectionConfig
from dbgateway.models.connection import ConnectionStatus
from dbgateway.models.query import QueryResult
from dbgateway.models.schema import ColumnSchema, DatabaseSchema, TableSchema


@pytest.fixture()
def sqlite_db_path(tmp_path):
    """Returns a SQLite file with users/orders tables and a few rows."""
    db_path = tmp_path / "gateway.db"
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(
            """
            CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL, age INTEGER);
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY,
                user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                total REAL
            );
            CREATE INDEX idx_orders_user ON orders (user_id);
            CREATE VIEW adults AS SELECT * FROM users WHERE age >= 18;
            """
        )
        conn.executemany(
            "INSERT INTO users (name, age) VALUES (?, ?)",
            [("Ada", 30), ("Linus", 45), ("Grace", 50)],
        )
        conn.executemany(
            "INSERT INTO orders (user_id, total) VALUES (?, ?)",
            [(1, 9.5), (1, 20.0), (2, 5.25)],
        )
        conn.commit()
    finally:
        conn.close()
    return db_path


@pytest.fixture()
def sqlite_config(sqlite_db_path):
    return SQLiteConnectionConfig(database="main", file_path=str(sqlite_db_path))


@pytest.fixture()
def gateway_settings():
    """Settings with background refresh off and small, test-friendly limits."""
    return GatewaySettings(
        max_connections_per_engine=10,
        default_limit=1000,
        max_limit=10000,
        query_timeout_ms=5000,
        max_history_size=100,
        schema_auto_refresh=False,
        query_workers=4,
        connections_config_path=None,
    )


@pytest.fixture()
def sample_schema():
    return DatabaseSchema(
        name="shop",
        engine=EngineKind.POSTGRESQL,
        tables=[
            TableSchema(
                name="users",
                columns=[
                    ColumnSchema(name="id", type="integer", nullable=False, primary_key=True),
                    ColumnSchema(name="email", type="text", comment="Login address"),
                ],
                comment="Registered customers",
            ),
            TableSchema(name="orders", columns=[ColumnSchema(name="user_id", type="integer")]),
            TableSchema(name="t", columns=[ColumnSchema(name="x", type="integer")]),
        ],
    )


class FakeClient:
    """Engine client stand-in recording lifecycle calls."""

    def __init__(self, connection_id, config, fail_connect=False, healthy=True):
        self.connection_id = connection_id
        self.config = config
        self.kind = config.engine_kind
        self.status = ConnectionStatus.DISCONNECTED
        self.error = None
        self.connection_time = None
        self.last_activity = None
        self.fail_connect = fail_connect
        self.healthy = healthy
        self.disconnect_calls = 0

    def connect(self):
        from dbgateway.common.errors import NativeEngineError
        if self.fail_connect:
            self.status = ConnectionStatus.ERROR
            self.error = "boom"
            raise NativeEngineError("Fake", "connection", RuntimeError("boom"))
        self.status = ConnectionStatus.CONNECTED

    def disconnect(self):
        self.disconnect_calls += 1
        self.status = ConnectionStatus.DISCONNECTED

    def test_connection(self):
        return self.healthy

    def execute_query(self, request, cancel_token=None):
        return QueryResult(data=[{"ok": 1}], total_rows=1)

    def get_schema(self):
        return DatabaseSchema(name="db", engine=self.kind)


class FakeConnectionService:
    """Connection service stand-in for query service tests.

    Records every dispatched request. ``delay`` makes execution block until
    the delay passes or the cancellation token fires.
    """

    def __init__(self, engine=EngineKind.POSTGRESQL, execution_times=None, delay=0.0):
        self.engine = engine
        self.requests = []
        self.tokens = []
        self.execution_times = list(execution_times or [])
        self.delay = delay
        self.started = threading.Event()

    def get_engine_kind(self, connection_id):
        return self.engine if connection_id == "c1" else None

    def execute_query(self, connection_id, request, cancel_token=None):
        self.requests.append(request)
        self.tokens.append(cancel_token)
        self.started.set()
        if self.delay and cancel_token is not None:
            cancel_token.wait(self.delay)
        elapsed = self.execution_times.pop(0) if self.execution_times else 1.0
        return QueryResult(data=[{"n": 1}], total_rows=1, execution_time=elapsed)


@pytest.fixture()
def fake_schema_service(sample_schema):
    service = MagicMock()
    service.get_schema.return_value = sample_schema
    return service


@pytest.fixture()
def fake_clients(monkeypatch):
    """Replaces the client factory with FakeClient.

    Returns a dict that records created clients by id; set
    ``fake_clients["fail"]`` / ``fake_clients["unhealthy"]`` to sets of ids
    to control behaviour.
    """
    registry = {"created": {}, "fail": set(), "unhealthy": set()}

    def factory(connection_id, config):
        client = FakeClient(
            connection_id,
            config,
            fail_connect=connection_id in registry["fail"],
            healthy=connection_id not in registry["unhealthy"],
        )
        registry["created"][connection_id] = client
        return client

    monkeypatch.setattr("dbgateway.services.connection.create_client", factory)
    return registry


@pytest.fixture()
def make_connection_service():
    return FakeConnectionService
