from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load environment variables from .env into os.environ
load_dotenv()


class GatewaySettings(BaseSettings):
    """Gateway configuration settings backed by environment variables."""

    max_connections_per_engine: int = Field(
        default=10,
        validation_alias="DBGW_MAX_CONNECTIONS_PER_ENGINE",
        description="Ceiling on simultaneously open connections per engine kind."
    )

    enable_validation: bool = Field(default=True, validation_alias="DBGW_ENABLE_VALIDATION")
    default_limit: int = Field(
        default=1000,
        validation_alias="DBGW_DEFAULT_LIMIT",
        description="Row limit appended to unbounded SELECT queries."
    )
    max_limit: int = Field(
        default=10000,
        validation_alias="DBGW_MAX_LIMIT",
        description="Upper bound any requested page size is clamped to."
    )
    query_timeout_ms: int = Field(
        default=30000,
        validation_alias="DBGW_QUERY_TIMEOUT_MS",
        description="Per-query deadline in milliseconds."
    )
    enable_query_history: bool = Field(default=True, validation_alias="DBGW_ENABLE_QUERY_HISTORY")
    max_history_size: int = Field(
        default=100,
        validation_alias="DBGW_MAX_HISTORY_SIZE",
        description="History and metric entries retained per connection."
    )
    enable_performance_tracking: bool = Field(
        default=True, validation_alias="DBGW_ENABLE_PERFORMANCE_TRACKING"
    )
    query_workers: int = Field(
        default=8,
        validation_alias="DBGW_QUERY_WORKERS",
        description="Worker threads used to run queries against their deadline."
    )

    schema_cache_enabled: bool = Field(default=True, validation_alias="DBGW_SCHEMA_CACHE_ENABLED")
    schema_cache_ttl_ms: int = Field(
        default=5 * 60 * 1000,
        validation_alias="DBGW_SCHEMA_CACHE_TTL_MS",
        description="Time-to-live for cached schema snapshots."
    )
    schema_max_cache_size: int = Field(
        default=100,
        validation_alias="DBGW_SCHEMA_MAX_CACHE_SIZE",
        description="Cached schemas kept before the oldest is evicted."
    )
    schema_auto_refresh: bool = Field(default=False, validation_alias="DBGW_SCHEMA_AUTO_REFRESH")
    schema_auto_refresh_interval_ms: int = Field(
        default=30 * 60 * 1000,
        validation_alias="DBGW_SCHEMA_AUTO_REFRESH_INTERVAL_MS",
    )

    connections_config_path: Optional[str] = Field(
        default=None,
        validation_alias="DBGW_CONNECTIONS_CONFIG",
        description="Optional YAML file listing connections to open at startup."
    )

    log_level: str = Field(default="INFO", validation_alias="DBGW_LOG_LEVEL")
    log_json: bool = Field(default=False, validation_alias="DBGW_LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


settings = GatewaySettings()

# Configure logging during import
from dbgateway.common.logger import configure_logging
configure_logging(
    level=settings.log_level,
    json_format=settings.log_json
)
