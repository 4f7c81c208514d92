"""Configuration loading helpers.

Settings come from the process environment (optionally a ``.env`` file) and
are validated once at startup. Nested sections use ``__`` as delimiter, e.g.
``TUNNELPOOL_TUNNEL__HOST`` or ``TUNNELPOOL_TARGET__POOL_SIZE``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

ENV_PREFIX = "TUNNELPOOL_"
ENV_FILE = Path(".env")


class TunnelConfig(BaseModel):
    """Bastion host reached over SSH."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(default=22, gt=0, lt=65536)
    username: str
    password: SecretStr | None = None
    client_keys: tuple[str, ...] = ()
    known_hosts: str | None = None
    keepalive_interval: float = Field(default=10.0, ge=0)
    keepalive_count_max: int = Field(default=3, ge=1)
    connect_timeout: float = Field(default=30.0, gt=0)


class TargetConfig(BaseModel):
    """Database server, addressed as seen from the bastion."""

    model_config = ConfigDict(frozen=True)

    driver: Literal["mysql", "postgres"] = "mysql"
    host: str = "127.0.0.1"
    port: int = Field(default=3306, gt=0, lt=65536)
    username: str
    password: SecretStr
    database: str
    pool_size: int = Field(default=10, ge=1)
    queue_bound: int = Field(default=0, ge=0)
    acquire_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=30.0, gt=0)
    query_timeout: float = Field(default=30.0, gt=0)


class RetryConfig(BaseModel):
    """Bounds for reconnect and per-query retry loops."""

    model_config = ConfigDict(frozen=True)

    reconnect_attempts: int = Field(default=3, ge=1)
    query_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given 1-based failed attempt."""

        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class CacheConfig(BaseModel):
    """Facade-level result cache."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    ttl: float = Field(default=10.0, gt=0)
    max_entries: int = Field(default=1024, ge=1)
    invalidate_on_write: bool = False


class Settings(BaseSettings):
    """Shape of the process configuration."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=ENV_FILE,
        extra="ignore",
        frozen=True,
    )

    tunnel: TunnelConfig | None = None
    target: TargetConfig
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    health_check_interval: float = Field(default=30.0, ge=0)
    drain_timeout: float = Field(default=10.0, ge=0)
    log_level: str = "INFO"

    @property
    def tunneled(self) -> bool:
        return self.tunnel is not None


def load_settings(env_file: Path | str | None = ENV_FILE) -> Settings:
    """Load settings from the environment; raise ``ConfigError`` if invalid."""

    try:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    except ValidationError as exc:
        raise ConfigError(_describe(exc)) from exc


def _describe(exc: ValidationError) -> str:
    problems: list[str] = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ())]
        variable = ENV_PREFIX + "__".join(location).upper()
        problems.append(f"{variable}: {error.get('msg', 'invalid value')}")
    return "Invalid configuration: " + "; ".join(problems)


__all__ = [
    "CacheConfig",
    "ENV_PREFIX",
    "RetryConfig",
    "Settings",
    "TargetConfig",
    "TunnelConfig",
    "load_settings",
]
