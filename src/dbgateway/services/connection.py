from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from dbgateway.clients.base import EngineClient
from dbgateway.clients.factory import create_client
from dbgateway.common.cancellation import CancellationToken
from dbgateway.common.errors import (
    ErrorCode,
    GatewayError,
    NotFoundError,
    PoolExhaustedError,
)
from dbgateway.common.logger import get_logger
from dbgateway.models.config import EngineConfig, EngineKind
from dbgateway.models.connection import (
    Connection,
    ConnectionInfo,
    ConnectionStatus,
    PoolStats,
)
from dbgateway.models.query import QueryRequest, QueryResult
from dbgateway.models.schema import DatabaseSchema

logger = get_logger(__name__)

DEFAULT_MAX_CONNECTIONS_PER_ENGINE = 10


class ConnectionService:
    """Registry of named connections, one engine client each.

    Enforces a per-engine-kind ceiling on open connections. Creating a
    connection whose native connect fails still returns a Connection, with
    status ``error``; unknown ids raise NotFoundError except on the query path,
    which reports them inside the QueryResult.
    """

    def __init__(self, max_connections_per_engine: Optional[int] = None, max_workers: Optional[int] = None):
        if max_connections_per_engine is None:
            from dbgateway.common.settings import settings
            max_connections_per_engine = settings.max_connections_per_engine
        self.max_connections_per_engine = max_connections_per_engine
        self._max_workers = max_workers
        self._clients: Dict[str, EngineClient] = {}
        self._active: Dict[EngineKind, int] = {kind: 0 for kind in EngineKind}
        self._lock = threading.RLock()

    def create_connection(self, connection_id: str, config: EngineConfig) -> Connection:
        """Opens a new named connection.

        Raises:
            ConfigurationError: If a required setting is missing.
            PoolExhaustedError: If the engine kind is at its ceiling.
            GatewayError: If the id is already registered.
        """
        kind = config.engine_kind
        with self._lock:
            if connection_id in self._clients:
                raise GatewayError(
                    f"Connection {connection_id} already exists", ErrorCode.CONFIGURATION_ERROR
                )
            if self._active[kind] >= self.max_connections_per_engine:
                raise PoolExhaustedError(kind.value, self.max_connections_per_engine)
            # Reserve the slot before connecting so concurrent creates cannot overshoot.
            self._active[kind] += 1

        client = create_client(connection_id, config)
        try:
            client.connect()
        except GatewayError as e:
            with self._lock:
                self._release(kind)
            if client.status != ConnectionStatus.ERROR:
                raise
            logger.warning(f"Connection {connection_id} failed: {e}")
            return Connection(
                id=connection_id,
                engine=kind,
                status=ConnectionStatus.ERROR,
                error=f"Connection failed: {e}",
            )

        with self._lock:
            self._clients[connection_id] = client
        logger.info(f"Created {kind.value} connection {connection_id}")
        return self._to_connection(connection_id, client)

    def test_connection(self, config: EngineConfig) -> bool:
        """Connects a throw-away client, tests it and tears it down. Never raises."""
        client = create_client("connection_test", config)
        try:
            client.connect()
            return client.test_connection()
        except Exception as e:
            logger.info(f"Connection test failed for {config.engine_kind.value}: {e}")
            return False
        finally:
            try:
                client.disconnect()
            except Exception as e:
                logger.warning(f"Failed to close test connection: {e}")

    def execute_query(
        self,
        connection_id: str,
        request: QueryRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> QueryResult:
        client = self._clients.get(connection_id)
        if client is None:
            return QueryResult.failure(
                f"Connection {connection_id} not found",
                error_code=ErrorCode.CONNECTION_NOT_FOUND.value,
            )
        if client.status != ConnectionStatus.CONNECTED:
            return QueryResult.failure(
                f"Connection {connection_id} is not active",
                error_code=ErrorCode.CONNECTION_INACTIVE.value,
            )
        return client.execute_query(request, cancel_token)

    def get_schema(self, connection_id: str) -> DatabaseSchema:
        return self.get_client(connection_id).get_schema()

    def get_databases(self, connection_id: str) -> List[str]:
        return self.get_client(connection_id).get_databases()

    def get_tables(self, connection_id: str, database: Optional[str] = None) -> List[str]:
        return self.get_client(connection_id).get_tables(database)

    def get_client(self, connection_id: str) -> EngineClient:
        client = self._clients.get(connection_id)
        if client is None:
            raise NotFoundError(connection_id)
        return client

    def get_engine_kind(self, connection_id: str) -> Optional[EngineKind]:
        client = self._clients.get(connection_id)
        return client.kind if client else None

    def disconnect(self, connection_id: str) -> None:
        """Closes and forgets a connection. Unknown ids are ignored."""
        with self._lock:
            client = self._clients.pop(connection_id, None)
            if client is None:
                return
            self._release(client.kind)
        client.disconnect()
        logger.info(f"Disconnected {connection_id}")

    def disconnect_all(self) -> None:
        """Disconnects everything concurrently. Individual failures are logged."""
        with self._lock:
            clients = dict(self._clients)
            self._clients.clear()
            self._active = {kind: 0 for kind in EngineKind}

        if not clients:
            return

        with ThreadPoolExecutor(max_workers=self._fan_out_workers(len(clients))) as executor:
            futures = {cid: executor.submit(client.disconnect) for cid, client in clients.items()}
            for cid, future in futures.items():
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Failed to disconnect {cid}: {e}")

    def health_check(self) -> Dict[str, bool]:
        clients = dict(self._clients)
        if not clients:
            return {}

        results: Dict[str, bool] = {}
        with ThreadPoolExecutor(max_workers=self._fan_out_workers(len(clients))) as executor:
            futures = {cid: executor.submit(client.test_connection) for cid, client in clients.items()}
            for cid, future in futures.items():
                try:
                    results[cid] = future.result()
                except Exception as e:
                    logger.error(f"Health check failed for {cid}: {e}")
                    results[cid] = False
        return results

    def get_active_connections(self) -> List[str]:
        return list(self._clients.keys())

    def get_connection_status(self, connection_id: str) -> Optional[ConnectionStatus]:
        client = self._clients.get(connection_id)
        return client.status if client else None

    def get_connection_info(self, connection_id: str) -> Optional[ConnectionInfo]:
        client = self._clients.get(connection_id)
        if client is None:
            return None
        return ConnectionInfo(**self._to_connection(connection_id, client).model_dump())

    def get_pool_stats(self) -> Dict[EngineKind, PoolStats]:
        with self._lock:
            return {
                kind: PoolStats(active=active, max=self.max_connections_per_engine)
                for kind, active in self._active.items()
            }

    def _release(self, kind: EngineKind) -> None:
        self._active[kind] = max(0, self._active[kind] - 1)

    def _fan_out_workers(self, count: int) -> int:
        return max(1, min(count, self._max_workers or count))

    @staticmethod
    def _to_connection(connection_id: str, client: EngineClient) -> Connection:
        return Connection(
            id=connection_id,
            engine=client.kind,
            status=client.status,
            error=client.error,
            connection_time=client.connection_time,
            last_activity=client.last_activity,
        )
