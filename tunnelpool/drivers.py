"""Database driver adapters used by the connection pool."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Protocol, Sequence, runtime_checkable

import aiomysql
import asyncpg

from .config import TargetConfig
from .errors import ConnectionLost, QueryError
from .models import QueryResult
from .transport import ForwardedEndpoint

LOG = logging.getLogger(__name__)

# Client/server error codes meaning the socket is unusable rather than the
# statement being wrong.
_MYSQL_CONNECTION_CODES = frozenset({1040, 1053, 2002, 2003, 2006, 2013, 2055})


@runtime_checkable
class DatabaseConnection(Protocol):
    """A single server connection borrowed from the pool."""

    @property
    def closed(self) -> bool:
        """Whether the underlying socket is gone."""

    async def execute(self, sql: str, params: Sequence[Any] = (), *, timeout: float) -> QueryResult:
        """Run a statement, raising ``ConnectionLost`` or ``QueryError``."""

    async def close(self) -> None:
        """Close gracefully; safe on an already closed connection."""


class DatabaseDriver(Protocol):
    """Opens connections to the database through a transport endpoint."""

    name: str

    async def connect(self, endpoint: ForwardedEndpoint, target: TargetConfig) -> DatabaseConnection: ...


class _DriverConnection:
    _semantic_errors: tuple[type[BaseException], ...] = ()

    def __init__(self, raw: Any) -> None:
        self._raw = raw

    async def execute(self, sql: str, params: Sequence[Any] = (), *, timeout: float) -> QueryResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._run(sql, tuple(params)), timeout)
        except asyncio.TimeoutError as exc:
            # The server may still be working on the statement; the socket
            # cannot be reused.
            self._abort()
            raise ConnectionLost(f"Query timed out after {timeout}s") from exc
        except Exception as exc:
            if self._is_connection_error(exc):
                raise ConnectionLost(f"Connection lost: {exc}") from exc
            if isinstance(exc, self._semantic_errors):
                raise QueryError(str(exc), code=self._error_code(exc)) from exc
            raise
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        LOG.debug("Statement finished in %sms (%s row(s))", elapsed_ms, result.row_count)
        return replace(result, elapsed_ms=elapsed_ms)

    async def _run(self, sql: str, params: tuple[Any, ...]) -> QueryResult:
        raise NotImplementedError

    def _abort(self) -> None:
        raise NotImplementedError

    def _is_connection_error(self, exc: BaseException) -> bool:
        return isinstance(exc, (OSError, ConnectionError))

    def _error_code(self, exc: BaseException) -> int | str | None:
        return None


class MySQLConnection(_DriverConnection):
    """aiomysql connection adapter."""

    _semantic_errors = (aiomysql.Error,)

    @property
    def closed(self) -> bool:
        return bool(self._raw.closed)

    async def _run(self, sql: str, params: tuple[Any, ...]) -> QueryResult:
        async with self._raw.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute(sql, params or None)
            if cursor.description:
                records = await cursor.fetchall()
                columns = tuple(str(column[0]) for column in cursor.description)
                rows = tuple(dict(record) for record in records)
                return QueryResult(rows=rows, columns=columns, row_count=len(rows))
            return QueryResult(row_count=max(cursor.rowcount, 0), last_insert_id=cursor.lastrowid or None)

    def _abort(self) -> None:
        self._raw.close()

    async def close(self) -> None:
        if self._raw.closed:
            return
        try:
            await self._raw.ensure_closed()
        except (OSError, aiomysql.Error) as exc:
            LOG.debug("Forcing MySQL connection closed: %s", exc)
            self._raw.close()

    def _is_connection_error(self, exc: BaseException) -> bool:
        if super()._is_connection_error(exc) or isinstance(exc, aiomysql.InterfaceError):
            return True
        if isinstance(exc, aiomysql.OperationalError):
            return self._error_code(exc) in _MYSQL_CONNECTION_CODES
        return False

    def _error_code(self, exc: BaseException) -> int | str | None:
        code = exc.args[0] if exc.args else None
        return code if isinstance(code, int) else None


class MySQLDriver:
    """Connects to MySQL/MariaDB via aiomysql."""

    name = "mysql"

    async def connect(self, endpoint: ForwardedEndpoint, target: TargetConfig) -> MySQLConnection:
        try:
            raw = await aiomysql.connect(
                host=endpoint.host,
                port=endpoint.port,
                user=target.username,
                password=target.password.get_secret_value(),
                db=target.database,
                connect_timeout=target.connect_timeout,
                autocommit=True,
                charset="utf8mb4",
            )
        except (OSError, aiomysql.Error) as exc:
            raise ConnectionLost(f"Could not connect to MySQL via {endpoint.host}:{endpoint.port}: {exc}") from exc
        return MySQLConnection(raw)


class PostgresConnection(_DriverConnection):
    """asyncpg connection adapter."""

    _semantic_errors = (asyncpg.PostgresError, asyncpg.exceptions.InterfaceError)

    @property
    def closed(self) -> bool:
        return bool(self._raw.is_closed())

    async def _run(self, sql: str, params: tuple[Any, ...]) -> QueryResult:
        records = await self._raw.fetch(sql, *params)
        columns = tuple(str(key) for key in records[0].keys()) if records else ()
        rows = tuple(dict(record.items()) for record in records)
        return QueryResult(rows=rows, columns=columns, row_count=len(rows))

    def _abort(self) -> None:
        self._raw.terminate()

    async def close(self) -> None:
        if self._raw.is_closed():
            return
        try:
            await self._raw.close(timeout=5)
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
            LOG.debug("Terminating PostgreSQL connection: %s", exc)
            self._raw.terminate()

    def _is_connection_error(self, exc: BaseException) -> bool:
        return super()._is_connection_error(exc) or isinstance(
            exc,
            (
                asyncpg.exceptions.ConnectionDoesNotExistError,
                asyncpg.exceptions.PostgresConnectionError,
                asyncpg.exceptions.AdminShutdownError,
                asyncpg.exceptions.CannotConnectNowError,
            ),
        )

    def _error_code(self, exc: BaseException) -> int | str | None:
        return getattr(exc, "sqlstate", None)


class PostgresDriver:
    """Connects to PostgreSQL via asyncpg."""

    name = "postgres"

    async def connect(self, endpoint: ForwardedEndpoint, target: TargetConfig) -> PostgresConnection:
        try:
            raw = await asyncpg.connect(
                host=endpoint.host,
                port=endpoint.port,
                user=target.username,
                password=target.password.get_secret_value(),
                database=target.database,
                timeout=target.connect_timeout,
            )
        except (OSError, asyncpg.PostgresError, asyncpg.exceptions.InterfaceError) as exc:
            raise ConnectionLost(f"Could not connect to PostgreSQL via {endpoint.host}:{endpoint.port}: {exc}") from exc
        return PostgresConnection(raw)


DRIVERS: dict[str, type[MySQLDriver] | type[PostgresDriver]] = {
    MySQLDriver.name: MySQLDriver,
    PostgresDriver.name: PostgresDriver,
}


def driver_for(name: str) -> DatabaseDriver:
    """Instantiate the driver registered under ``name``."""

    try:
        return DRIVERS[name]()
    except KeyError:
        raise ValueError(f"Unknown database driver '{name}'.") from None


__all__ = [
    "DRIVERS",
    "DatabaseConnection",
    "DatabaseDriver",
    "MySQLConnection",
    "MySQLDriver",
    "PostgresConnection",
    "PostgresDriver",
    "driver_for",
]
