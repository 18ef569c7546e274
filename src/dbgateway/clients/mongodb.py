from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import MongoClient

from dbgateway.clients.base import EngineClient
from dbgateway.clients.mongo_query import MongoQuery, parse_mongo_query
from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.logger import get_logger
from dbgateway.models.config import EngineKind, build_connection_url
from dbgateway.models.query import ColumnMetadata, QueryRequest, QueryResult
from dbgateway.models.schema import ColumnSchema, DatabaseSchema, TableSchema

logger = get_logger(__name__)

DEFAULT_SERVER_SELECTION_TIMEOUT_MS = 5000


def mongo_type_of(value: Any) -> str:
    """Names the BSON-ish type of a runtime value."""
    if value is None:
        return "null"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "double"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, ObjectId):
        return "objectId"
    return "unknown"


def columns_from_document(doc: Dict[str, Any]) -> List[ColumnMetadata]:
    return [
        ColumnMetadata(
            name=key,
            type=mongo_type_of(value),
            nullable=True,
            primary_key=key == "_id",
        )
        for key, value in doc.items()
    ]


class MongoDBClient(EngineClient):
    """MongoDB over pymongo.

    Query text is parsed by ``parse_mongo_query``. The request limit and
    offset become cursor limit/skip, and the request timeout becomes a
    server-side ``maxTimeMS``.
    """

    kind = EngineKind.MONGODB
    label = "MongoDB"

    def __init__(self, connection_id: str, config):
        super().__init__(connection_id, config)
        self.client: Optional[MongoClient] = None
        self.db = None

    def _has_handle(self) -> bool:
        return self.client is not None

    def _open(self) -> None:
        options: Dict[str, Any] = {
            "serverSelectionTimeoutMS": self.config.timeout or DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
        }
        if self.config.pool_size:
            options["maxPoolSize"] = self.config.pool_size

        client = MongoClient(build_connection_url(self.config), **options)
        try:
            client.admin.command("ping")
        except Exception:
            client.close()
            raise
        self.client = client
        self.db = client[self.config.database]

    def _close(self) -> None:
        client, self.client, self.db = self.client, None, None
        client.close()

    def _ping(self) -> None:
        self.client.admin.command("ping")

    def _execute(self, request: QueryRequest, cancel_token: Optional[CancellationToken]) -> QueryResult:
        query = parse_mongo_query(request.query)
        collection = self.db[query.collection]
        time_opts = {"maxTimeMS": request.timeout} if request.timeout else {}

        start = time.perf_counter()
        total_rows = None
        if query.operation == "find":
            docs, total_rows = self._find(collection, query, request)
        elif query.operation == "findOne":
            doc = collection.find_one(
                query.filter, query.projection, max_time_ms=request.timeout or None
            )
            docs = [doc] if doc is not None else []
        elif query.operation == "aggregate":
            docs = self._aggregate(collection, query, request, time_opts)
        elif query.operation == "countDocuments":
            docs = [{"count": collection.count_documents(query.filter, **time_opts)}]
        elif query.operation == "distinct":
            values = collection.distinct(query.distinct_field, query.filter, **time_opts)
            docs = [{query.distinct_field: v} for v in values]
        else:
            raise ValueError(f"unsupported operation '{query.operation}'")
        duration = time.perf_counter() - start

        return QueryResult(
            data=docs,
            total_rows=len(docs) if total_rows is None else total_rows,
            execution_time=duration * 1000,
            columns=columns_from_document(docs[0]) if docs else [],
        )

    @staticmethod
    def _window(query: MongoQuery, request: QueryRequest):
        skip = request.offset if request.offset is not None else query.skip
        limit = query.limit
        if request.limit is not None:
            limit = request.limit if limit is None else min(limit, request.limit)
        return skip, limit

    def _find(self, collection, query: MongoQuery, request: QueryRequest):
        cursor = collection.find(query.filter, query.projection)
        if query.sort:
            cursor = cursor.sort(list(query.sort.items()))
        skip, limit = self._window(query, request)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        if request.timeout:
            cursor = cursor.max_time_ms(request.timeout)

        if query.explain:
            return [cursor.explain()], 1
        docs = list(cursor)
        return docs, collection.count_documents(query.filter)

    def _aggregate(self, collection, query: MongoQuery, request: QueryRequest, time_opts):
        pipeline = list(query.pipeline)
        skip, limit = self._window(query, request)
        if skip:
            pipeline.append({"$skip": skip})
        if limit:
            pipeline.append({"$limit": limit})

        if query.explain:
            plan = self.db.command(
                "explain",
                {"aggregate": collection.name, "pipeline": pipeline, "cursor": {}},
            )
            return [plan]
        return list(collection.aggregate(pipeline, **time_opts))

    def _fetch_schema(self) -> DatabaseSchema:
        tables = []
        for info in self.db.list_collections():
            name = info["name"]
            sample = self.db[name].find_one() if info.get("type") != "view" else None
            columns = [
                ColumnSchema(name=c.name, type=c.type, nullable=True, primary_key=c.primary_key)
                for c in (columns_from_document(sample) if sample else [])
            ]
            kind = "view" if info.get("type") == "view" else "collection"
            tables.append(TableSchema(name=name, type=kind, columns=columns))
        return DatabaseSchema(name=self.config.database, engine=self.kind, tables=tables)

    def _list_databases(self) -> List[str]:
        return self.client.list_database_names()

    def _list_tables(self, database: Optional[str]) -> List[str]:
        db = self.client[database] if database else self.db
        return db.list_collection_names()
