from __future__ import annotations

import contextvars
import dataclasses
import random
import string
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dbgateway.clients.mongo_query import MongoQueryParseError, parse_mongo_query
from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.errors import ErrorCode, QueryTimeoutError, QueryValidationError
from dbgateway.common.logger import get_logger, query_context
from dbgateway.models.config import EngineKind
from dbgateway.models.query import (
    QueryHistoryEntry,
    QueryOptions,
    QueryPerformanceMetric,
    QueryRequest,
    QueryResult,
    ValidationError,
    ValidationResult,
)
from dbgateway.services.connection import ConnectionService
from dbgateway.services.history import QueryHistoryStore
from dbgateway.services.pagination import apply_default_limit, apply_sql_page, resolve_page
from dbgateway.services.schema import SchemaService
from dbgateway.services.validation import validate_query_text

logger = get_logger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
_CANCEL_POLL_SECONDS = 0.05


def generate_query_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"query_{int(time.time() * 1000)}_{suffix}"


@dataclasses.dataclass
class QueryServiceConfig:
    """
    Configuration for the query service.

    Attributes:
        enable_validation: Validate queries before dispatch.
        default_limit: Limit appended to unbounded SELECT queries.
        max_limit: Ceiling every effective limit is clamped to.
        query_timeout_ms: Default per-query deadline.
        enable_query_history: Record a history entry per dispatched query.
        max_history_size: History and metric entries kept per connection.
        enable_performance_tracking: Record a metric per dispatched query.
        max_workers: Threads that run queries against their deadline.
    """
    enable_validation: bool = True
    default_limit: int = 1000
    max_limit: int = 10000
    query_timeout_ms: int = 30000
    enable_query_history: bool = True
    max_history_size: int = 100
    enable_performance_tracking: bool = True
    max_workers: int = 8

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "QueryServiceConfig":
        if settings is None:
            from dbgateway.common.settings import settings
        values = dict(
            enable_validation=settings.enable_validation,
            default_limit=settings.default_limit,
            max_limit=settings.max_limit,
            query_timeout_ms=settings.query_timeout_ms,
            enable_query_history=settings.enable_query_history,
            max_history_size=settings.max_history_size,
            enable_performance_tracking=settings.enable_performance_tracking,
            max_workers=settings.query_workers,
        )
        values.update(overrides)
        return cls(**values)


class QueryService:
    """Validation, pagination, deadlines and history around raw execution.

    ``execute_query`` never raises: every failure comes back as a QueryResult
    with ``error`` set and ``metadata["error_code"]`` naming the cause.

    A query that outlives its deadline has its cancellation token fired.
    PostgreSQL and SQLite abort the running statement; MongoDB is bounded by
    ``maxTimeMS``; MySQL cannot be interrupted, so the statement may finish in
    the background and its result is dropped. A query still queued behind busy
    workers when its deadline passes is never sent to the engine.
    """

    def __init__(
        self,
        connection_service: ConnectionService,
        schema_service: SchemaService,
        config: Optional[QueryServiceConfig] = None,
    ):
        self.connection_service = connection_service
        self.schema_service = schema_service
        self.config = config or QueryServiceConfig.from_settings()
        self.history = QueryHistoryStore(self.config.max_history_size)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="dbgateway-query"
        )
        self._active: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def execute_query(
        self,
        connection_id: str,
        query: str,
        parameters: Optional[List[Any]] = None,
        options: Optional[QueryOptions] = None,
    ) -> QueryResult:
        options = options or QueryOptions()
        query_id = generate_query_id()

        with query_context(connection_id=connection_id, query_id=query_id):
            engine = self.connection_service.get_engine_kind(connection_id)
            if engine is None:
                return QueryResult.failure(
                    f"Connection {connection_id} not found",
                    query_id=query_id,
                    error_code=ErrorCode.CONNECTION_NOT_FOUND.value,
                )

            validation = None
            if self.config.enable_validation:
                validation = self.validate_query(connection_id, query)
                if not validation.is_valid:
                    return self._rejected(query_id, validation)

            request = self._build_request(connection_id, engine, query, parameters, options)

            if options.dry_run:
                if validation is None:
                    validation = self.validate_query(connection_id, query)
                errors = [e.message for e in validation.errors]
                return QueryResult(
                    error=f"Validation errors: {', '.join(errors)}" if errors else None,
                    warnings=[w.message for w in validation.warnings] or None,
                    metadata={
                        "query_id": query_id,
                        "dry_run": True,
                        "query": request.query,
                        "validation": validation.model_dump(),
                    },
                )

            result = self._dispatch(query_id, request)
            result.metadata = {**(result.metadata or {}), "query_id": query_id}
            if result.error and "error_code" not in result.metadata:
                result.metadata["error_code"] = ErrorCode.EXECUTION_ERROR.value
            if validation is not None and validation.warnings:
                result.warnings = (result.warnings or []) + [w.message for w in validation.warnings]

            self._record(connection_id, query_id, query, parameters, result, options)
            return result

    def _rejected(self, query_id: str, validation: ValidationResult) -> QueryResult:
        err = QueryValidationError(
            [e.message for e in validation.errors],
            [w.message for w in validation.warnings],
        )
        logger.info(err.message)
        return QueryResult(
            error=err.message,
            warnings=err.warnings or None,
            metadata={
                "query_id": query_id,
                "error_code": err.error_code.value,
                "validation": validation.model_dump(),
            },
        )

    def _build_request(
        self,
        connection_id: str,
        engine: EngineKind,
        query: str,
        parameters: Optional[List[Any]],
        options: QueryOptions,
    ) -> QueryRequest:
        request = QueryRequest(
            connection_id=connection_id,
            query=query,
            parameters=parameters,
            timeout=options.timeout or self.config.query_timeout_ms,
        )
        page = resolve_page(options, self.config.default_limit, self.config.max_limit)

        if engine == EngineKind.MONGODB:
            # Cursor limit/skip, not text rewriting.
            if page is not None:
                request.limit = page.limit
                request.offset = page.offset
            elif self._is_mongo_find(query):
                request.limit = min(self.config.default_limit, self.config.max_limit)
            return request

        if page is not None:
            request.query = apply_sql_page(query, page)
        else:
            request.query = apply_default_limit(query, self.config.default_limit, self.config.max_limit)
        return request

    @staticmethod
    def _is_mongo_find(query: str) -> bool:
        try:
            return parse_mongo_query(query).is_find
        except MongoQueryParseError:
            return False

    def _dispatch(self, query_id: str, request: QueryRequest) -> QueryResult:
        token = CancellationToken()
        with self._lock:
            self._active[query_id] = token

        ctx = contextvars.copy_context()
        future = self._executor.submit(
            ctx.run, self.connection_service.execute_query, request.connection_id, request, token
        )
        deadline = time.monotonic() + request.timeout / 1000
        try:
            while not token.is_cancelled():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise QueryTimeoutError(request.timeout)
                try:
                    result = future.result(timeout=min(remaining, _CANCEL_POLL_SECONDS))
                except FuturesTimeoutError:
                    continue
                if not token.is_cancelled():
                    return result
            future.cancel()
            # A result that lands after cancel_query is discarded.
            logger.info(f"Query {query_id} cancelled")
            return QueryResult.failure("Query cancelled", error_code=ErrorCode.QUERY_CANCELLED.value)
        except QueryTimeoutError as e:
            token.cancel()
            future.cancel()
            logger.warning(f"Query {query_id} timed out after {request.timeout}ms")
            return QueryResult.failure(
                e.message,
                execution_time=float(request.timeout),
                error_code=e.error_code.value,
            )
        except Exception as e:
            logger.error(f"Query {query_id} failed: {e}")
            return QueryResult.failure(
                f"Query execution failed: {e}", error_code=ErrorCode.EXECUTION_ERROR.value
            )
        finally:
            with self._lock:
                self._active.pop(query_id, None)

    def _record(
        self,
        connection_id: str,
        query_id: str,
        query: str,
        parameters: Optional[List[Any]],
        result: QueryResult,
        options: QueryOptions,
    ) -> None:
        now = datetime.now(timezone.utc)
        metric = QueryPerformanceMetric(
            query_id=query_id,
            connection_id=connection_id,
            query=query,
            execution_time=result.execution_time,
            rows_returned=len(result.data),
            timestamp=now,
            error=result.error,
        )
        if self.config.enable_performance_tracking and options.enable_metrics:
            self.history.add_metric(metric)
        if self.config.enable_query_history:
            self.history.add_entry(QueryHistoryEntry(
                id=query_id,
                connection_id=connection_id,
                query=query,
                parameters=parameters,
                result=result,
                metrics=metric,
                timestamp=now,
                tags=list(options.tags),
            ))

    def validate_query(self, connection_id: str, query: str) -> ValidationResult:
        engine = self.connection_service.get_engine_kind(connection_id)
        if engine is None:
            return ValidationResult(
                is_valid=False,
                errors=[ValidationError(message=f"Connection {connection_id} not found")],
            )
        try:
            schema = self.schema_service.get_schema(connection_id)
            return validate_query_text(engine, schema, query)
        except Exception as e:
            return ValidationResult(
                is_valid=False,
                errors=[ValidationError(message=f"Validation error: {e}")],
            )

    def explain_query(self, connection_id: str, query: str) -> Dict[str, Any]:
        """Runs the engine's native explain and normalizes its shape."""
        engine = self.connection_service.get_engine_kind(connection_id)
        if engine is None:
            return {"error": f"Connection {connection_id} not found"}

        statement = query.strip().rstrip(";")
        if engine == EngineKind.MYSQL:
            statement = f"EXPLAIN FORMAT=JSON {statement}"
        elif engine == EngineKind.POSTGRESQL:
            statement = f"EXPLAIN (FORMAT JSON, ANALYZE, BUFFERS) {statement}"
        elif engine == EngineKind.SQLITE:
            statement = f"EXPLAIN QUERY PLAN {statement}"
        elif engine == EngineKind.MONGODB:
            if statement.startswith("{"):
                statement = statement[:-1].rstrip().rstrip(",") + ', "explain": true}'
            elif not statement.endswith(".explain()"):
                statement = f"{statement}.explain()"

        with query_context(connection_id=connection_id):
            result = self.connection_service.execute_query(
                connection_id, QueryRequest(connection_id=connection_id, query=statement)
            )
        if result.error:
            return {"error": result.error}

        if engine == EngineKind.SQLITE:
            lines = [
                f"{row.get('id')}: {row.get('detail')} ({row.get('parent', row.get('selectid'))})"
                for row in result.data
            ]
            return {"plan": result.data, "formatted": "\n".join(lines)}
        return result.data[0] if result.data else {}

    def cancel_query(self, query_id: str) -> bool:
        with self._lock:
            token = self._active.get(query_id)
        if token is None:
            return False
        token.cancel()
        return True

    def get_active_queries(self) -> List[str]:
        with self._lock:
            return list(self._active.keys())

    def get_query_history(self, connection_id: str, limit: Optional[int] = None) -> List[QueryHistoryEntry]:
        return self.history.history(connection_id, limit)

    def search_query_history(self, connection_id: str, term: str) -> List[QueryHistoryEntry]:
        return self.history.search(connection_id, term)

    def add_to_favorites(self, connection_id: str, entry_id: str) -> bool:
        return self.history.set_favorite(connection_id, entry_id, True)

    def remove_from_favorites(self, connection_id: str, entry_id: str) -> bool:
        return self.history.set_favorite(connection_id, entry_id, False)

    def get_favorite_queries(self, connection_id: str) -> List[QueryHistoryEntry]:
        return self.history.favorites(connection_id)

    def get_performance_metrics(self, connection_id: str, limit: Optional[int] = None) -> List[QueryPerformanceMetric]:
        return self.history.metrics(connection_id, limit)

    def get_slow_queries(
        self, threshold: float = 1000, connection_id: Optional[str] = None
    ) -> List[QueryPerformanceMetric]:
        metrics = self.history.metrics(connection_id) if connection_id else self.history.all_metrics()
        return [m for m in metrics if m.execution_time > threshold]

    def clear_history(self, connection_id: Optional[str] = None) -> None:
        self.history.clear(connection_id)

    def close(self) -> None:
        with self._lock:
            tokens = list(self._active.values())
            self._active.clear()
        for token in tokens:
            token.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.history.clear()
