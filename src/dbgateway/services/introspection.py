"""Per-engine structural introspection used by the schema service.

Relational engines are read from their catalog tables, SQLite from pragmas
and MongoDB from sampled documents plus the native index listing. Document
field types are inferred from runtime values, so they are best-effort.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List

from sqlalchemy import text

from dbgateway.clients.base import EngineClient
from dbgateway.clients.mongodb import mongo_type_of
from dbgateway.common.errors import NativeEngineError
from dbgateway.common.logger import get_logger
from dbgateway.models.config import EngineKind
from dbgateway.models.schema import (
    ColumnSchema,
    DatabaseSchema,
    ForeignKeySchema,
    IndexSchema,
    TableSchema,
)

logger = get_logger(__name__)

MONGO_SAMPLE_SIZE = 100
MONGO_MAX_DEPTH = 2


def introspect_schema(client: EngineClient) -> DatabaseSchema:
    """Fetches a detailed schema for the client's engine.

    Raises:
        NativeEngineError: If the catalog could not be read.
    """
    try:
        if client.kind == EngineKind.MONGODB:
            return _introspect_mongodb(client)
        elif client.kind == EngineKind.MYSQL:
            return _introspect_mysql(client)
        elif client.kind == EngineKind.POSTGRESQL:
            return _introspect_postgresql(client)
        elif client.kind == EngineKind.SQLITE:
            return _introspect_sqlite(client)
    except NativeEngineError:
        raise
    except Exception as e:
        raise NativeEngineError(client.label, "schema introspection", e) from e
    raise NativeEngineError(client.label, "schema introspection", ValueError(f"unsupported engine {client.kind}"))


def _rows(client: EngineClient, sql: str, **params) -> List[Dict[str, Any]]:
    if client.engine is None:
        raise RuntimeError("not connected")
    with client.engine.connect() as conn:
        return [dict(row) for row in conn.execute(text(sql), params).mappings().all()]


def _group(rows: List[Dict[str, Any]], key: str) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        grouped[row[key]].append(row)
    return grouped


def _indexes_from_rows(rows: List[Dict[str, Any]]) -> List[IndexSchema]:
    """Collapses one-row-per-column index listings into IndexSchema objects."""
    indexes: Dict[str, IndexSchema] = {}
    for row in rows:
        index = indexes.get(row["index_name"])
        if index is None:
            index = IndexSchema(
                name=row["index_name"],
                columns=[],
                unique=bool(row["is_unique"]),
                primary=bool(row["is_primary"]),
                type=row.get("index_type"),
            )
            indexes[row["index_name"]] = index
        index.columns.append(row["column_name"])
    return list(indexes.values())


def _foreign_keys_from_rows(rows: List[Dict[str, Any]]) -> List[ForeignKeySchema]:
    return [
        ForeignKeySchema(
            name=row["constraint_name"],
            column=row["column_name"],
            referenced_table=row["referenced_table"],
            referenced_column=row["referenced_column"],
            on_delete=row.get("on_delete"),
            on_update=row.get("on_update"),
        )
        for row in rows
    ]


MYSQL_TABLES = """
SELECT TABLE_NAME AS table_name, TABLE_TYPE AS table_type,
       TABLE_ROWS AS row_count, TABLE_COMMENT AS comment
FROM information_schema.TABLES
WHERE TABLE_SCHEMA = :db
ORDER BY TABLE_NAME
"""

MYSQL_COLUMNS = """
SELECT TABLE_NAME AS table_name, COLUMN_NAME AS name, COLUMN_TYPE AS type,
       IS_NULLABLE AS is_nullable, COLUMN_KEY AS column_key, EXTRA AS extra,
       COLUMN_DEFAULT AS default_value, CHARACTER_MAXIMUM_LENGTH AS length,
       NUMERIC_PRECISION AS `precision`, NUMERIC_SCALE AS scale,
       CHARACTER_SET_NAME AS charset, COLLATION_NAME AS collation,
       COLUMN_COMMENT AS comment
FROM information_schema.COLUMNS
WHERE TABLE_SCHEMA = :db
ORDER BY TABLE_NAME, ORDINAL_POSITION
"""

MYSQL_INDEXES = """
SELECT TABLE_NAME AS table_name, INDEX_NAME AS index_name, COLUMN_NAME AS column_name,
       NON_UNIQUE = 0 AS is_unique, INDEX_NAME = 'PRIMARY' AS is_primary,
       INDEX_TYPE AS index_type
FROM information_schema.STATISTICS
WHERE TABLE_SCHEMA = :db
ORDER BY TABLE_NAME, INDEX_NAME, SEQ_IN_INDEX
"""

MYSQL_FOREIGN_KEYS = """
SELECT k.TABLE_NAME AS table_name, k.CONSTRAINT_NAME AS constraint_name,
       k.COLUMN_NAME AS column_name, k.REFERENCED_TABLE_NAME AS referenced_table,
       k.REFERENCED_COLUMN_NAME AS referenced_column,
       r.DELETE_RULE AS on_delete, r.UPDATE_RULE AS on_update
FROM information_schema.KEY_COLUMN_USAGE k
JOIN information_schema.REFERENTIAL_CONSTRAINTS r
  ON r.CONSTRAINT_SCHEMA = k.CONSTRAINT_SCHEMA AND r.CONSTRAINT_NAME = k.CONSTRAINT_NAME
WHERE k.TABLE_SCHEMA = :db AND k.REFERENCED_TABLE_NAME IS NOT NULL
ORDER BY k.TABLE_NAME, k.ORDINAL_POSITION
"""


def _introspect_mysql(client: EngineClient) -> DatabaseSchema:
    db = client.config.database
    columns = _group(_rows(client, MYSQL_COLUMNS, db=db), "table_name")
    indexes = _group(_rows(client, MYSQL_INDEXES, db=db), "table_name")
    foreign_keys = _group(_rows(client, MYSQL_FOREIGN_KEYS, db=db), "table_name")

    tables = []
    for row in _rows(client, MYSQL_TABLES, db=db):
        name = row["table_name"]
        tables.append(TableSchema(
            name=name,
            type="view" if row["table_type"] == "VIEW" else "table",
            columns=[
                ColumnSchema(
                    name=col["name"],
                    type=col["type"],
                    nullable=col["is_nullable"] == "YES",
                    primary_key=col["column_key"] == "PRI",
                    auto_increment="auto_increment" in (col["extra"] or ""),
                    default_value=col["default_value"],
                    length=col["length"],
                    precision=col["precision"],
                    scale=col["scale"],
                    charset=col["charset"],
                    collation=col["collation"],
                    comment=col["comment"] or None,
                )
                for col in columns.get(name, [])
            ],
            indexes=_indexes_from_rows(indexes.get(name, [])),
            foreign_keys=_foreign_keys_from_rows(foreign_keys.get(name, [])),
            row_count=row["row_count"],
            comment=row["comment"] or None,
        ))
    return DatabaseSchema(name=db, engine=client.kind, tables=tables)


PG_TABLES = """
SELECT table_name, table_type,
       obj_description(format('%I.%I', table_schema, table_name)::regclass, 'pg_class') AS comment
FROM information_schema.tables
WHERE table_schema = :schema
ORDER BY table_name
"""

PG_COLUMNS = """
SELECT c.table_name, c.column_name AS name, c.data_type AS type, c.is_nullable,
       c.column_default AS default_value, c.is_identity,
       c.character_maximum_length AS length, c.numeric_precision AS precision,
       c.numeric_scale AS scale, c.collation_name AS collation,
       col_description(format('%I.%I', c.table_schema, c.table_name)::regclass, c.ordinal_position) AS comment
FROM information_schema.columns c
WHERE c.table_schema = :schema
ORDER BY c.table_name, c.ordinal_position
"""

PG_PRIMARY_KEYS = """
SELECT tc.table_name, kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
WHERE tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = :schema
"""

PG_INDEXES = """
SELECT t.relname AS table_name, i.relname AS index_name, a.attname AS column_name,
       ix.indisunique AS is_unique, ix.indisprimary AS is_primary, am.amname AS index_type
FROM pg_class t
JOIN pg_namespace n ON n.oid = t.relnamespace
JOIN pg_index ix ON t.oid = ix.indrelid
JOIN pg_class i ON i.oid = ix.indexrelid
JOIN pg_am am ON am.oid = i.relam
JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
WHERE n.nspname = :schema
ORDER BY t.relname, i.relname, array_position(ix.indkey::int2[], a.attnum)
"""

PG_FOREIGN_KEYS = """
SELECT tc.table_name, tc.constraint_name, kcu.column_name,
       ccu.table_name AS referenced_table, ccu.column_name AS referenced_column,
       rc.delete_rule AS on_delete, rc.update_rule AS on_update
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name AND ccu.constraint_schema = tc.table_schema
JOIN information_schema.referential_constraints rc
  ON rc.constraint_name = tc.constraint_name AND rc.constraint_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY' AND tc.table_schema = :schema
"""


def _introspect_postgresql(client: EngineClient) -> DatabaseSchema:
    schema = client.config.db_schema
    columns = _group(_rows(client, PG_COLUMNS, schema=schema), "table_name")
    primary_keys: Dict[str, set] = defaultdict(set)
    for row in _rows(client, PG_PRIMARY_KEYS, schema=schema):
        primary_keys[row["table_name"]].add(row["column_name"])
    indexes = _group(_rows(client, PG_INDEXES, schema=schema), "table_name")
    foreign_keys = _group(_rows(client, PG_FOREIGN_KEYS, schema=schema), "table_name")

    tables = []
    for row in _rows(client, PG_TABLES, schema=schema):
        name = row["table_name"]
        pks = primary_keys.get(name, set())
        tables.append(TableSchema(
            name=name,
            type="view" if row["table_type"] == "VIEW" else "table",
            columns=[
                ColumnSchema(
                    name=col["name"],
                    type=col["type"],
                    nullable=col["is_nullable"] == "YES",
                    primary_key=col["name"] in pks,
                    auto_increment=(
                        col["is_identity"] == "YES"
                        or str(col["default_value"] or "").startswith("nextval(")
                    ),
                    default_value=col["default_value"],
                    length=col["length"],
                    precision=col["precision"],
                    scale=col["scale"],
                    collation=col["collation"],
                    comment=col["comment"],
                )
                for col in columns.get(name, [])
            ],
            indexes=_indexes_from_rows(indexes.get(name, [])),
            foreign_keys=_foreign_keys_from_rows(foreign_keys.get(name, [])),
            comment=row["comment"],
        ))
    return DatabaseSchema(name=client.config.database, engine=client.kind, tables=tables)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _introspect_sqlite(client: EngineClient) -> DatabaseSchema:
    tables = []
    objects = _rows(
        client,
        "SELECT name, type FROM sqlite_master "
        "WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%' ORDER BY name",
    )
    for obj in objects:
        name = obj["name"]
        quoted = _quote(name)

        columns = []
        for col in _rows(client, f"PRAGMA table_info({quoted})"):
            is_pk = col["pk"] > 0
            columns.append(ColumnSchema(
                name=col["name"],
                type=col["type"] or "",
                nullable=not col["notnull"] and not is_pk,
                primary_key=is_pk,
                # INTEGER PRIMARY KEY aliases the rowid.
                auto_increment=is_pk and (col["type"] or "").upper() == "INTEGER",
                default_value=col["dflt_value"],
            ))

        indexes = []
        for idx in _rows(client, f"PRAGMA index_list({quoted})"):
            idx_columns = [
                info["name"] for info in _rows(client, f"PRAGMA index_info({_quote(idx['name'])})")
            ]
            indexes.append(IndexSchema(
                name=idx["name"],
                columns=idx_columns,
                unique=bool(idx["unique"]),
                primary=idx.get("origin") == "pk",
            ))

        foreign_keys = [
            ForeignKeySchema(
                name=f"fk_{name}_{fk['id']}",
                column=fk["from"],
                referenced_table=fk["table"],
                referenced_column=fk["to"] or "",
                on_delete=fk["on_delete"],
                on_update=fk["on_update"],
            )
            for fk in _rows(client, f"PRAGMA foreign_key_list({quoted})")
        ]

        row_count = None
        if obj["type"] == "table":
            row_count = _rows(client, f"SELECT COUNT(*) AS n FROM {quoted}")[0]["n"]

        tables.append(TableSchema(
            name=name,
            type=obj["type"],
            columns=columns,
            indexes=indexes,
            foreign_keys=foreign_keys,
            row_count=row_count,
        ))
    return DatabaseSchema(name=client.config.database, engine=client.kind, tables=tables)


def _merge_fields(fields: Dict[str, str], doc: Dict[str, Any], prefix: str = "", depth: int = 0) -> None:
    """Records dotted field paths and their types, descending into sub-documents."""
    for key, value in doc.items():
        path = f"{prefix}{key}"
        value_type = mongo_type_of(value)
        seen = fields.get(path)
        if seen is None:
            fields[path] = value_type
        elif seen != value_type and "null" not in (seen, value_type):
            fields[path] = "mixed"
        elif seen == "null":
            fields[path] = value_type
        if isinstance(value, dict) and depth + 1 < MONGO_MAX_DEPTH:
            _merge_fields(fields, value, f"{path}.", depth + 1)


def _introspect_mongodb(client: EngineClient) -> DatabaseSchema:
    db = client.db
    if db is None:
        raise RuntimeError("not connected")

    tables = []
    for name in db.list_collection_names():
        collection = db[name]

        fields: Dict[str, str] = {}
        for doc in collection.find().limit(MONGO_SAMPLE_SIZE):
            _merge_fields(fields, doc)
        columns = [
            ColumnSchema(name=path, type=field_type, nullable=True, primary_key=path == "_id")
            for path, field_type in fields.items()
        ]

        indexes = []
        for index_name, spec in collection.index_information().items():
            indexes.append(IndexSchema(
                name=index_name,
                columns=[key for key, _ in spec.get("key", [])],
                unique=bool(spec.get("unique", False)),
                primary=index_name == "_id_",
            ))

        try:
            row_count = collection.estimated_document_count()
        except Exception as e:
            logger.warning(f"Failed to count documents in {name}: {e}")
            row_count = None

        tables.append(TableSchema(
            name=name,
            type="collection",
            columns=columns,
            indexes=indexes,
            row_count=row_count,
        ))
    return DatabaseSchema(name=client.config.database, engine=client.kind, tables=tables)
