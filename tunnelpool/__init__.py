"""SSH-tunneled, supervised database connection pool with a small query facade."""

from __future__ import annotations

from .config import CacheConfig, RetryConfig, Settings, TargetConfig, TunnelConfig, load_settings
from .errors import (
    ConfigError,
    ConnectionLost,
    ConnectionUnavailable,
    PoolClosed,
    PoolError,
    PoolExhausted,
    QueryError,
    QueryExhausted,
    TransportError,
    TunnelPoolError,
)
from .models import QueryResult
from .query import BlockingDatabase, Database
from .supervisor import Supervisor, SupervisorState

__version__ = "0.1.0"

__all__ = [
    "BlockingDatabase",
    "CacheConfig",
    "ConfigError",
    "ConnectionLost",
    "ConnectionUnavailable",
    "Database",
    "PoolClosed",
    "PoolError",
    "PoolExhausted",
    "QueryError",
    "QueryExhausted",
    "QueryResult",
    "RetryConfig",
    "Settings",
    "Supervisor",
    "SupervisorState",
    "TargetConfig",
    "TransportError",
    "TunnelConfig",
    "TunnelPoolError",
    "__version__",
    "load_settings",
]
