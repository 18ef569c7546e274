from __future__ import annotations

import os
import pathlib
import re
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import URL

from dbgateway.common.errors import ConfigurationError


class EngineKind(str, Enum):
    """The four engine kinds the gateway can talk to."""
    MONGODB = "mongodb"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"


DEFAULT_PORTS: Dict[EngineKind, Optional[int]] = {
    EngineKind.MONGODB: 27017,
    EngineKind.MYSQL: 3306,
    EngineKind.POSTGRESQL: 5432,
    EngineKind.SQLITE: None,
}


class BaseConnectionConfig(BaseModel):
    """Settings shared by every engine kind.

    Attributes:
        host: Server host name.
        port: Server port. Falls back to the engine default when unset.
        database: Database name. Required at connect time.
        username: Login name.
        password: Login password.
        ssl: Whether to require TLS.
        connection_string: Native URL that overrides the discrete fields.
        pool_size: Driver-side pool size.
        timeout: Connect timeout in milliseconds.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    ssl: bool = False
    connection_string: Optional[str] = None
    pool_size: Optional[int] = None
    timeout: Optional[int] = None

    @property
    def engine_kind(self) -> EngineKind:
        return EngineKind(self.engine)

    def effective_port(self) -> Optional[int]:
        return self.port or DEFAULT_PORTS[self.engine_kind]

    def password_value(self) -> Optional[str]:
        return self.password.get_secret_value() if self.password else None


class MongoConnectionConfig(BaseConnectionConfig):
    engine: Literal["mongodb"] = "mongodb"
    auth_source: Optional[str] = None
    replica_set: Optional[str] = None
    read_preference: Optional[
        Literal["primary", "primaryPreferred", "secondary", "secondaryPreferred", "nearest"]
    ] = None


class MySQLConnectionConfig(BaseConnectionConfig):
    engine: Literal["mysql"] = "mysql"
    charset: Optional[str] = None
    timezone: Optional[str] = None


class PostgreSQLConnectionConfig(BaseConnectionConfig):
    engine: Literal["postgresql"] = "postgresql"
    db_schema: str = Field(default="public", alias="schema")
    application_name: Optional[str] = None
    statement_timeout: Optional[int] = None


class SQLiteConnectionConfig(BaseConnectionConfig):
    engine: Literal["sqlite"] = "sqlite"
    file_path: Optional[str] = None
    mode: Optional[Literal["ro", "rw", "rwc", "memory"]] = None
    busy_timeout: Optional[int] = None

    def is_memory(self) -> bool:
        return self.mode == "memory" or self.file_path == ":memory:"


EngineConfig = Annotated[
    Union[
        MongoConnectionConfig,
        MySQLConnectionConfig,
        PostgreSQLConnectionConfig,
        SQLiteConnectionConfig,
    ],
    Field(discriminator="engine"),
]

_engine_config_adapter = TypeAdapter(EngineConfig)

_ENGINE_ALIASES = {
    "mongo": EngineKind.MONGODB,
    "postgres": EngineKind.POSTGRESQL,
    "sqlite3": EngineKind.SQLITE,
}


def _normalize_engine(raw_engine: Any) -> EngineKind:
    """Maps an engine name (or common alias) onto an EngineKind."""
    if isinstance(raw_engine, EngineKind):
        return raw_engine
    name = str(raw_engine or "").strip().lower()
    if name in _ENGINE_ALIASES:
        return _ENGINE_ALIASES[name]
    try:
        return EngineKind(name)
    except ValueError:
        raise ConfigurationError(f"Unsupported database type: {raw_engine}") from None


def parse_engine_config(raw: Dict[str, Any]) -> EngineConfig:
    """Validates a raw mapping into the matching engine config variant.

    The engine may be given as ``engine`` or ``type``.

    Raises:
        ConfigurationError: If the engine kind is unknown or a field is malformed.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError("Connection config must be a mapping")

    data = dict(raw)
    raw_engine = data.pop("type", None)
    if "engine" in data:
        raw_engine = data["engine"]
    data["engine"] = _normalize_engine(raw_engine).value
    try:
        return _engine_config_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid {data['engine']} connection config: {e}") from e


def build_connection_url(config: EngineConfig) -> Union[str, URL]:
    """Renders the native connection URL for a config.

    SQL engines get a SQLAlchemy URL, MongoDB a ``mongodb://`` URI.
    An explicit connection_string always wins.
    """
    if config.connection_string:
        return config.connection_string

    kind = config.engine_kind
    if kind == EngineKind.MONGODB:
        return _build_mongo_uri(config)
    if kind == EngineKind.SQLITE:
        return _build_sqlite_url(config)

    drivername = "mysql+pymysql" if kind == EngineKind.MYSQL else "postgresql+psycopg2"
    query: Dict[str, str] = {}
    if kind == EngineKind.MYSQL and config.charset:
        query["charset"] = config.charset
    if kind == EngineKind.POSTGRESQL:
        if config.application_name:
            query["application_name"] = config.application_name
        if config.ssl:
            query["sslmode"] = "require"

    return URL.create(
        drivername,
        username=config.username,
        password=config.password_value(),
        host=config.host or "localhost",
        port=config.effective_port(),
        database=config.database,
        query=query,
    )


def _build_mongo_uri(config: MongoConnectionConfig) -> str:
    credentials = ""
    if config.username:
        credentials = quote_plus(config.username)
        if config.password:
            credentials += ":" + quote_plus(config.password_value())
        credentials += "@"

    uri = f"mongodb://{credentials}{config.host or 'localhost'}:{config.effective_port()}/{config.database or ''}"

    params = []
    if config.auth_source:
        params.append(f"authSource={quote_plus(config.auth_source)}")
    if config.replica_set:
        params.append(f"replicaSet={quote_plus(config.replica_set)}")
    if config.read_preference:
        params.append(f"readPreference={config.read_preference}")
    if config.ssl:
        params.append("tls=true")
    if params:
        uri += "?" + "&".join(params)
    return uri


def _build_sqlite_url(config: SQLiteConnectionConfig) -> URL:
    if config.is_memory():
        return URL.create("sqlite", database=":memory:")
    if config.mode in ("ro", "rw"):
        return URL.create(
            "sqlite",
            database=f"file:{config.file_path}",
            query={"mode": config.mode, "uri": "true"},
        )
    return URL.create("sqlite", database=config.file_path)


_ENV_REF = re.compile(r"^\$\{env:([^}]+)\}$")


def _resolve_env_refs(obj: Any) -> Any:
    """Recursively replaces ``${env:NAME}`` strings with environment values."""
    if isinstance(obj, str):
        match = _ENV_REF.match(obj.strip())
        if not match:
            return obj
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            raise ConfigurationError(f"Environment variable '{name}' is not set")
        return value
    if isinstance(obj, dict):
        return {k: _resolve_env_refs(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_resolve_env_refs(v) for v in obj]
    return obj


def load_connection_configs(path: Union[str, pathlib.Path]) -> Dict[str, EngineConfig]:
    """Load connection configs from a YAML file.

    Expected layout::

        version: 1
        connections:
          - id: analytics
            description: Reporting replica
            connection:
              engine: postgresql
              host: db.internal
              database: analytics
              password: ${env:ANALYTICS_DB_PASSWORD}

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A dictionary mapping connection ids to validated configs.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If the document is malformed or an env reference is unset.
    """
    import yaml

    path = pathlib.Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Connection config not found: {path}")

    raw = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict) or not isinstance(raw.get("connections"), list):
        raise ConfigurationError("Connection config must be a mapping with a 'connections' list")

    configs: Dict[str, EngineConfig] = {}
    for item in raw["connections"]:
        if not isinstance(item, dict) or "id" not in item or "connection" not in item:
            raise ConfigurationError("Each connection entry needs 'id' and 'connection'")
        connection_id = str(item["id"])
        if connection_id in configs:
            raise ConfigurationError(f"Duplicate connection id '{connection_id}'")
        configs[connection_id] = parse_engine_config(_resolve_env_refs(item["connection"]))
    return configs
