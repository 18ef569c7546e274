import logging
import json
import contextvars
from contextlib import contextmanager
from typing import Optional

_query_id_ctx = contextvars.ContextVar("query_id", default=None)
_connection_id_ctx = contextvars.ContextVar("connection_id", default=None)


class QueryContextFilter(logging.Filter):
    """Injects query_id and connection_id from contextvars into the log record."""
    def filter(self, record):
        record.query_id = _query_id_ctx.get()
        record.connection_id = _connection_id_ctx.get()
        return True


@contextmanager
def query_context(connection_id: Optional[str] = None, query_id: Optional[str] = None):
    """Context manager that tags every log record emitted inside it.

    Args:
        connection_id (Optional[str]): The connection the work belongs to.
        query_id (Optional[str]): The query being executed, if any.
    """
    conn_token = _connection_id_ctx.set(connection_id)
    query_token = _query_id_ctx.set(query_id)
    try:
        yield
    finally:
        _query_id_ctx.reset(query_token)
        _connection_id_ctx.reset(conn_token)


def current_query_context() -> dict:
    """Returns the ids bound by the innermost query_context."""
    return {
        "connection_id": _connection_id_ctx.get(),
        "query_id": _query_id_ctx.get(),
    }


# LogRecord attributes that are not user-supplied extras.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "query_id", "connection_id"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the query context and any ``extra=`` keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({
            key: getattr(record, key)
            for key in ("connection_id", "query_id")
            if getattr(record, key, None)
        })
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update({
            key: value for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        })
        return json.dumps(payload, default=str)


TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(connection_id)s:%(query_id)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Installs a single stderr handler on the root logger.

    Existing root handlers are removed, so calling this again swaps the
    format rather than duplicating output.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler()
    stream.addFilter(QueryContextFilter())
    stream.setFormatter(JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    root.addHandler(stream)

    # Driver chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Returns a named logger under the root handler installed by configure_logging."""
    return logging.getLogger(name)
