from __future__ import annotations

import dataclasses
import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from dbgateway.common.logger import get_logger
from dbgateway.models.schema import (
    ColumnSchema,
    DatabaseSchema,
    IndexSchema,
    SchemaCacheEntry,
    TableSchema,
)
from dbgateway.services.connection import ConnectionService
from dbgateway.services.introspection import introspect_schema

logger = get_logger(__name__)


@dataclasses.dataclass
class SchemaServiceConfig:
    """
    Configuration for the schema service.

    Attributes:
        cache_enabled: Keep fetched schemas in memory.
        cache_ttl_ms: Age after which a cached schema is refetched.
        max_cache_size: Cached connections kept before the oldest is evicted.
        auto_refresh: Periodically refetch schemas in the background.
        auto_refresh_interval_ms: Delay between background refreshes.
    """
    cache_enabled: bool = True
    cache_ttl_ms: int = 5 * 60 * 1000
    max_cache_size: int = 100
    auto_refresh: bool = False
    auto_refresh_interval_ms: int = 30 * 60 * 1000

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "SchemaServiceConfig":
        if settings is None:
            from dbgateway.common.settings import settings
        values = dict(
            cache_enabled=settings.schema_cache_enabled,
            cache_ttl_ms=settings.schema_cache_ttl_ms,
            max_cache_size=settings.schema_max_cache_size,
            auto_refresh=settings.schema_auto_refresh,
            auto_refresh_interval_ms=settings.schema_auto_refresh_interval_ms,
        )
        values.update(overrides)
        return cls(**values)


class ColumnMatch(BaseModel):
    table: str
    column: ColumnSchema


class SchemaService:
    """Cached structural introspection on top of the connection service.

    A cache hit returns the very object stored at fetch time, so callers can
    detect hits by identity. Entries expire lazily on read; when the cache is
    full the oldest insertion is evicted.
    """

    def __init__(self, connection_service: ConnectionService, config: Optional[SchemaServiceConfig] = None):
        self.connection_service = connection_service
        self.config = config or SchemaServiceConfig.from_settings()
        self._cache: OrderedDict[str, SchemaCacheEntry] = OrderedDict()
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._closed = False

    def get_schema(self, connection_id: str, force_refresh: bool = False) -> DatabaseSchema:
        """Returns the schema for a connection, from cache when possible.

        Raises:
            NotFoundError: If the connection id is unknown.
            NativeEngineError: If the engine could not be introspected.
        """
        if self.config.cache_enabled and not force_refresh:
            with self._lock:
                entry = self._cache.get(connection_id)
                if entry is not None and not entry.is_expired():
                    self._hits += 1
                    return entry.schema
                if entry is not None:
                    del self._cache[connection_id]
                self._misses += 1

        client = self.connection_service.get_client(connection_id)
        schema = introspect_schema(client)
        logger.info(f"Fetched schema for {connection_id}: {len(schema.tables)} tables")

        if self.config.cache_enabled:
            self._store(connection_id, schema)
        if self.config.auto_refresh:
            self._schedule_refresh(connection_id)
        return schema

    def refresh_schema(self, connection_id: str) -> DatabaseSchema:
        return self.get_schema(connection_id, force_refresh=True)

    def _store(self, connection_id: str, schema: DatabaseSchema) -> None:
        with self._lock:
            self._cache.pop(connection_id, None)
            while self._cache and len(self._cache) >= self.config.max_cache_size:
                evicted_id, _ = self._cache.popitem(last=False)
                logger.debug("Evicted schema for %s from cache", evicted_id)
            self._cache[connection_id] = SchemaCacheEntry(schema=schema, ttl_ms=self.config.cache_ttl_ms)

    def get_table_schema(self, connection_id: str, table_name: str) -> Optional[TableSchema]:
        return self.get_schema(connection_id).find_table(table_name)

    def get_table_columns(self, connection_id: str, table_name: str) -> List[ColumnSchema]:
        table = self.get_table_schema(connection_id, table_name)
        return list(table.columns) if table else []

    def get_table_indexes(self, connection_id: str, table_name: str) -> List[IndexSchema]:
        table = self.get_table_schema(connection_id, table_name)
        return list(table.indexes or []) if table else []

    def search_tables(self, connection_id: str, term: str) -> List[TableSchema]:
        needle = term.lower()
        return [
            table for table in self.get_schema(connection_id).tables
            if needle in table.name.lower() or needle in (table.comment or "").lower()
        ]

    def search_columns(self, connection_id: str, term: str) -> List[ColumnMatch]:
        needle = term.lower()
        matches = []
        for table in self.get_schema(connection_id).tables:
            for column in table.columns:
                if needle in column.name.lower() or needle in (column.comment or "").lower():
                    matches.append(ColumnMatch(table=table.name, column=column))
        return matches

    def clear_cache(self, connection_id: Optional[str] = None) -> None:
        with self._lock:
            if connection_id is None:
                self._cache.clear()
                self._hits = 0
                self._misses = 0
                timers = list(self._timers.values())
                self._timers.clear()
            else:
                self._cache.pop(connection_id, None)
                timer = self._timers.pop(connection_id, None)
                timers = [timer] if timer else []
        for timer in timers:
            timer.cancel()

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._cache),
                "max_size": self.config.max_cache_size,
                "hits": self._hits,
                "misses": self._misses,
            }

    def close(self) -> None:
        self._closed = True
        self.clear_cache()

    def _schedule_refresh(self, connection_id: str) -> None:
        if self._closed:
            return
        timer = threading.Timer(
            self.config.auto_refresh_interval_ms / 1000,
            self._auto_refresh,
            args=(connection_id,),
        )
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(connection_id, None)
            self._timers[connection_id] = timer
        if previous:
            previous.cancel()
        timer.start()

    def _auto_refresh(self, connection_id: str) -> None:
        with self._lock:
            self._timers.pop(connection_id, None)
        if self._closed:
            return
        try:
            self.refresh_schema(connection_id)
            logger.info(f"Auto-refreshed schema for {connection_id}")
        except Exception as e:
            logger.error(f"Auto-refresh failed for {connection_id}: {e}")
