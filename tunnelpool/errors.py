"""Error taxonomy shared by the transport, pool, supervisor and facade."""

from __future__ import annotations


class TunnelPoolError(RuntimeError):
    """Base class for every error raised by tunnelpool."""

    retryable = False
    status_code = 500


class ConfigError(TunnelPoolError):
    """Raised at startup when configuration is missing or invalid."""


class TransportError(TunnelPoolError):
    """Raised when the bastion session or the port forward cannot be set up."""

    retryable = True
    status_code = 503

    def __init__(self, message: str, *, cause: str) -> None:
        super().__init__(message)
        self.cause = cause


class PoolError(TunnelPoolError):
    """Raised when a pool cannot be initialized or used."""

    retryable = True
    status_code = 503


class PoolClosed(PoolError):
    """Raised when acquiring from a pool that is draining or closed."""


class PoolExhausted(PoolError):
    """Raised when the wait queue is full or the wait bound has elapsed."""

    retryable = False


class ConnectionLost(TunnelPoolError):
    """Connection-level failure: stream closed, server gone, or timeout."""

    retryable = True
    status_code = 503


class ConnectionUnavailable(TunnelPoolError):
    """Raised when the supervisor exhausted its reconnect attempts."""

    status_code = 503


class QueryError(TunnelPoolError):
    """Semantic query failure (malformed SQL, constraint violation)."""

    status_code = 400

    def __init__(self, message: str, *, code: int | str | None = None) -> None:
        super().__init__(message)
        self.code = code


class QueryExhausted(TunnelPoolError):
    """Raised when every query attempt failed with a connection-level error."""

    status_code = 503

    def __init__(self, attempts: int, cause: BaseException | None) -> None:
        super().__init__(f"Query failed after {attempts} attempt(s): {cause}")
        self.attempts = attempts
        self.cause = cause


__all__ = [
    "ConfigError",
    "ConnectionLost",
    "ConnectionUnavailable",
    "PoolClosed",
    "PoolError",
    "PoolExhausted",
    "QueryError",
    "QueryExhausted",
    "TransportError",
    "TunnelPoolError",
]
