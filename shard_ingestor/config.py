import os
import re
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

DEFAULT_MAX_OPEN_CONNS = 25
DEFAULT_MAX_IDLE_CONNS = 25
DEFAULT_CONN_MAX_LIFETIME = 3600

# sqlite refuses more attached databases than this per connection
SQLITE_MAX_ATTACHED = 10

CONFIG_FILE_ENV = "INGESTOR_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "config.yaml"

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValueError(f"'{value}' is not a valid shard identifier")
    return value


class SourceSpec(BaseModel):
    """Which source adapter to run and its adapter-specific options."""

    name: str = "simulated"
    config: Dict[str, Any] = Field(default_factory=dict)


class ExtraShardGroup(BaseModel):
    tables: int = Field(default=0, ge=0)


class ShardLayoutSettings(BaseModel):
    """Shard naming and fan-out shape."""

    prefix: str = "ingest"
    copies: int = Field(default=1, ge=0)
    extra: Dict[str, ExtraShardGroup] = Field(default_factory=dict)
    channel_buffer: int = Field(default=32, ge=0)

    @field_validator("prefix")
    @classmethod
    def _prefix_is_identifier(cls, value: str) -> str:
        return _check_identifier(value)

    @field_validator("extra")
    @classmethod
    def _groups_are_identifiers(
        cls, value: Dict[str, ExtraShardGroup]
    ) -> Dict[str, ExtraShardGroup]:
        for name in value:
            _check_identifier(name)
        return value


class ConnectionPoolSettings(BaseModel):
    """Pool bounds; zero or missing values fall back to the defaults."""

    max_open_conns: int = Field(default=DEFAULT_MAX_OPEN_CONNS, ge=0)
    max_idle_conns: int = Field(default=DEFAULT_MAX_IDLE_CONNS, ge=0)
    conn_max_lifetime: int = Field(default=DEFAULT_CONN_MAX_LIFETIME, ge=0)

    @model_validator(mode="after")
    def _apply_defaults(self) -> "ConnectionPoolSettings":
        if not self.max_open_conns:
            self.max_open_conns = DEFAULT_MAX_OPEN_CONNS
        if not self.max_idle_conns:
            self.max_idle_conns = DEFAULT_MAX_IDLE_CONNS
        if not self.conn_max_lifetime:
            self.conn_max_lifetime = DEFAULT_CONN_MAX_LIFETIME
        return self


class TLSSettings(BaseModel):
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    insecure_skip_verify: bool = False
    min_version: str = ""  # e.g. "TLSv1_2"
    max_version: str = ""
    ciphers: str = ""
    # name checked against the server certificate instead of the host
    server_name: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.ca_file or self.cert_file or self.key_file or self.server_name)


class DatabaseSettings(BaseModel):
    """Backing store connection parameters."""

    driver: Literal["mysql", "sqlite"] = "mysql"
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    dbname: str = ""
    sqlite_path: str = "data/warehouse.db"
    pool_timeout: float = 30.0
    tls: TLSSettings = Field(default_factory=TLSSettings)
    connection_pool: ConnectionPoolSettings = Field(default_factory=ConnectionPoolSettings)


class PollingSettings(BaseModel):
    error_backoff_seconds: float = Field(default=5.0, ge=0)
    health_check_seconds: float = Field(default=60.0, gt=0)
    acquire_retry_seconds: float = Field(default=5.0, ge=0)


class LogSettings(BaseModel):
    level: str = "INFO"
    syslog: bool = False
    syslog_address: str = "/dev/log"
    tag: str = "data_pull"


class Settings(BaseSettings):
    """Runtime configuration for the shard ingestor."""

    model_config = SettingsConfigDict(env_prefix="INGESTOR_", env_nested_delimiter="__")

    source: SourceSpec = Field(default_factory=SourceSpec)
    databases: ShardLayoutSettings = Field(default_factory=ShardLayoutSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @model_validator(mode="after")
    def _sqlite_shards_fit_one_connection(self) -> "Settings":
        shards = self.databases.copies + len(self.databases.extra)
        if self.database.driver == "sqlite" and shards > SQLITE_MAX_ATTACHED:
            raise ValueError(
                f"sqlite can attach at most {SQLITE_MAX_ATTACHED} shards per connection, "
                f"layout has {shards}"
            )
        return self


def load_settings(path: Optional[str] = None) -> Settings:
    """Build settings from a YAML file layered over environment and defaults.

    The file is ``path`` if given, else ``$INGESTOR_CONFIG_FILE``, else
    ``config.yaml``. Only a file that was asked for by name has to exist.
    """
    explicit = path or os.environ.get(CONFIG_FILE_ENV)
    config_path = Path(explicit or DEFAULT_CONFIG_FILE)

    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigError(f"Config file {config_path} must contain a mapping")
        data = loaded or {}
    elif explicit:
        raise ConfigError(f"Config file {config_path} does not exist")

    try:
        return Settings(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_path}: {exc}") from exc
