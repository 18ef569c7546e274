import logging
import time
from unittest.mock import MagicMock

import pytest

from dbgateway.common.errors import NativeEngineError, NotFoundError
from dbgateway.models.config import EngineKind
from dbgateway.models.schema import ColumnSchema, DatabaseSchema, IndexSchema, TableSchema
from dbgateway.services.schema import SchemaService, SchemaServiceConfig


@pytest.fixture()
def introspection(monkeypatch):
    """Counts introspection calls and returns a fresh schema object each time."""
    calls = []

    def fake_introspect(client):
        calls.append(client)
        if getattr(client, "fail", False):
            raise NativeEngineError("Fake", "schema introspection", RuntimeError("permission denied"))
        return DatabaseSchema(
            name="shop",
            engine=EngineKind.POSTGRESQL,
            tables=[
                TableSchema(
                    name="users",
                    columns=[
                        ColumnSchema(name="id", type="integer", primary_key=True),
                        ColumnSchema(name="email", type="text", comment="Login address"),
                    ],
                    indexes=[IndexSchema(name="users_email_key", columns=["email"], unique=True)],
                    comment="Registered customers",
                ),
                TableSchema(name="user_roles", columns=[ColumnSchema(name="role", type="text")]),
                TableSchema(name="orders", columns=[ColumnSchema(name="user_id", type="integer")]),
            ],
        )

    monkeypatch.setattr("dbgateway.services.schema.introspect_schema", fake_introspect)
    return calls


@pytest.fixture()
def connections():
    service = MagicMock()
    service.get_client.side_effect = lambda cid: MagicMock(connection_id=cid, fail=False)
    return service


def _service(connections, **config):
    return SchemaService(connections, SchemaServiceConfig(**config))


def test_cache_hit_returns_identical_object(introspection, connections):
    # Validates identity on hits because callers compare schemas by reference.
    # Arrange
    service = _service(connections)

    # Act
    first = service.get_schema("c1")
    second = service.get_schema("c1")

    # Assert
    assert first is second
    assert len(introspection) == 1
    assert service.get_cache_stats() == {"size": 1, "max_size": 100, "hits": 1, "misses": 1}


def test_force_refresh_bypasses_cache(introspection, connections):
    # Validates forced refresh because DDL changes must become visible on demand.
    # Arrange
    service = _service(connections)
    first = service.get_schema("c1")

    # Act
    refreshed = service.refresh_schema("c1")

    # Assert
    assert refreshed is not first
    assert service.get_schema("c1") is refreshed
    assert len(introspection) == 2


def test_expired_entry_is_refetched(introspection, connections):
    # Validates lazy TTL expiry because stale schemas would validate against dropped tables.
    # Arrange
    service = _service(connections, cache_ttl_ms=1000)
    first = service.get_schema("c1")
    service._cache["c1"].captured_at -= 5000

    # Act
    second = service.get_schema("c1")

    # Assert
    assert second is not first
    assert service.get_cache_stats()["misses"] == 2


def test_full_cache_evicts_oldest(introspection, connections):
    # Validates FIFO eviction because the cache is bounded by connection count.
    # Arrange
    service = _service(connections, max_cache_size=2)
    service.get_schema("a")
    service.get_schema("b")
    service.get_schema("a")

    # Act
    service.get_schema("c")
    service.get_schema("a")

    # Assert
    assert list(service._cache) == ["c", "a"]
    assert len(introspection) == 4


def test_disabled_cache_always_fetches(introspection, connections):
    # Validates the cache switch because some deployments need live schemas.
    # Arrange
    service = _service(connections, cache_enabled=False)

    # Act
    service.get_schema("c1")
    service.get_schema("c1")

    # Assert
    assert len(introspection) == 2
    assert service.get_cache_stats()["size"] == 0


def test_clear_cache_single_and_all(introspection, connections):
    # Validates both clear forms because a full clear also resets the counters.
    # Arrange
    service = _service(connections)
    service.get_schema("a")
    service.get_schema("b")
    service.get_schema("a")

    # Act
    service.clear_cache("a")
    after_single = service.get_cache_stats()
    service.clear_cache()

    # Assert
    assert (after_single["size"], after_single["hits"]) == (1, 1)
    assert service.get_cache_stats() == {"size": 0, "max_size": 100, "hits": 0, "misses": 0}


def test_unknown_connection_raises(introspection, connections):
    # Validates lookup failures propagate because schema calls are not value-returned.
    # Arrange
    connections.get_client.side_effect = NotFoundError("ghost")
    service = _service(connections)

    # Act / Assert
    with pytest.raises(NotFoundError):
        service.get_schema("ghost")
    assert introspection == []


def test_table_lookups_and_search(introspection, connections):
    # Validates the derived lookups because they all read through the cached schema.
    # Arrange
    service = _service(connections)

    # Act
    users = service.get_table_schema("c1", "USERS")
    missing = service.get_table_columns("c1", "ghosts")
    indexes = service.get_table_indexes("c1", "users")
    table_hits = service.search_tables("c1", "user")
    comment_hits = service.search_tables("c1", "customers")
    column_hits = service.search_columns("c1", "login")

    # Assert
    assert users.name == "users"
    assert missing == []
    assert [i.name for i in indexes] == ["users_email_key"]
    assert [t.name for t in table_hits] == ["users", "user_roles"]
    assert [t.name for t in comment_hits] == ["users"]
    assert [(m.table, m.column.name) for m in column_hits] == [("users", "email")]
    assert len(introspection) == 1


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_auto_refresh_reloads_in_background(introspection, connections, caplog):
    # Validates background refresh because long-lived gateways must notice DDL changes.
    # Arrange
    caplog.set_level(logging.INFO, logger="dbgateway.services.schema")
    service = _service(connections, auto_refresh=True, auto_refresh_interval_ms=20)

    # Act
    service.get_schema("c1")
    refreshed = _wait_for(lambda: "Auto-refreshed schema for c1" in caplog.text)
    service.close()

    # Assert
    assert refreshed
    assert len(introspection) >= 2


def test_auto_refresh_failure_is_logged(introspection, connections, caplog):
    # Validates refresh failures stay in the log because no caller is waiting on them.
    # Arrange
    service = _service(connections, auto_refresh=True, auto_refresh_interval_ms=20)
    service.get_schema("c1")
    connections.get_client.side_effect = lambda cid: MagicMock(connection_id=cid, fail=True)

    # Act
    logged = _wait_for(lambda: "Auto-refresh failed for c1" in caplog.text)
    service.close()

    # Assert
    assert logged
    assert "Fake schema introspection failed: permission denied" in caplog.text
    assert service._timers == {}
