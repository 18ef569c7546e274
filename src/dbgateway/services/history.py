from __future__ import annotations

import threading
from collections import OrderedDict, defaultdict
from typing import Dict, List, Optional

from dbgateway.common.logger import get_logger
from dbgateway.models.query import QueryHistoryEntry, QueryPerformanceMetric

logger = get_logger(__name__)


def _tail(items: List, limit: Optional[int]) -> List:
    if limit is None:
        return items
    if limit <= 0:
        return []
    return items[-limit:]


class QueryHistoryStore:
    """Per-connection query history and performance metrics.

    Both are bounded to ``max_size`` entries per connection and evict the
    oldest insertion first. Reads return oldest-first.
    """

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._history: Dict[str, OrderedDict[str, QueryHistoryEntry]] = defaultdict(OrderedDict)
        self._metrics: Dict[str, OrderedDict[str, QueryPerformanceMetric]] = defaultdict(OrderedDict)
        self._lock = threading.Lock()

    def add_entry(self, entry: QueryHistoryEntry) -> None:
        with self._lock:
            self._evict_into(self._history[entry.connection_id], entry.id, entry)

    def add_metric(self, metric: QueryPerformanceMetric) -> None:
        with self._lock:
            self._evict_into(self._metrics[metric.connection_id], metric.query_id, metric)

    def _evict_into(self, bucket: OrderedDict, key: str, value) -> None:
        bucket[key] = value
        while len(bucket) > self.max_size:
            evicted_key, _ = bucket.popitem(last=False)
            logger.debug("Evicted %s from query history", evicted_key)

    def history(self, connection_id: str, limit: Optional[int] = None) -> List[QueryHistoryEntry]:
        with self._lock:
            return _tail(list(self._history.get(connection_id, {}).values()), limit)

    def metrics(self, connection_id: str, limit: Optional[int] = None) -> List[QueryPerformanceMetric]:
        with self._lock:
            return _tail(list(self._metrics.get(connection_id, {}).values()), limit)

    def all_metrics(self) -> List[QueryPerformanceMetric]:
        with self._lock:
            return [m for bucket in self._metrics.values() for m in bucket.values()]

    def search(self, connection_id: str, term: str) -> List[QueryHistoryEntry]:
        needle = term.lower()
        return [
            entry for entry in self.history(connection_id)
            if needle in entry.query.lower() or any(needle in tag.lower() for tag in entry.tags)
        ]

    def set_favorite(self, connection_id: str, entry_id: str, favorite: bool) -> bool:
        with self._lock:
            entry = self._history.get(connection_id, {}).get(entry_id)
            if entry is None:
                return False
            entry.favorite = favorite
            return True

    def favorites(self, connection_id: str) -> List[QueryHistoryEntry]:
        return [entry for entry in self.history(connection_id) if entry.favorite]

    def clear(self, connection_id: Optional[str] = None) -> None:
        with self._lock:
            if connection_id is None:
                self._history.clear()
                self._metrics.clear()
            else:
                self._history.pop(connection_id, None)
                self._metrics.pop(connection_id, None)
