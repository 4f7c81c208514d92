"""Tests for the MySQL and PostgreSQL driver adapters."""

from __future__ import annotations

import asyncio
from typing import Any

import aiomysql
import asyncpg
import pytest

from tunnelpool import drivers as drivers_module
from tunnelpool.config import TargetConfig
from tunnelpool.drivers import (
    DatabaseConnection,
    MySQLConnection,
    MySQLDriver,
    PostgresConnection,
    PostgresDriver,
    driver_for,
)
from tunnelpool.errors import ConnectionLost, QueryError
from tunnelpool.transport import ForwardedEndpoint

TARGET = TargetConfig(username="app", password="secret", database="appdb", connect_timeout=5)
ENDPOINT = ForwardedEndpoint("127.0.0.1", 40000)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeCursor:
    def __init__(self, raw: "FakeMySQL") -> None:
        self._raw = raw
        self.description: tuple[tuple[str, ...], ...] | None = None
        self.rowcount = -1
        self.lastrowid: int | None = None

    async def __aenter__(self) -> "FakeCursor":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def execute(self, sql: str, params: Any = None) -> None:
        self._raw.executed.append((sql, params))
        if self._raw.delay:
            await asyncio.sleep(self._raw.delay)
        if self._raw.error is not None:
            raise self._raw.error
        if self._raw.rows is not None:
            self.description = tuple((name,) for name in self._raw.rows[0]) if self._raw.rows else (("id",),)
        else:
            self.rowcount = 1
            self.lastrowid = 42

    async def fetchall(self) -> list[dict[str, Any]]:
        return list(self._raw.rows or [])


class FakeMySQL:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = rows
        self.error: BaseException | None = None
        self.delay = 0.0
        self.executed: list[tuple[str, Any]] = []
        self.closed = False
        self.cursor_classes: list[type] = []

    def cursor(self, cursor_class: type) -> FakeCursor:
        self.cursor_classes.append(cursor_class)
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True

    async def ensure_closed(self) -> None:
        self.closed = True


class FakeRecord(dict):  # type: ignore[type-arg]
    pass


class FakePostgres:
    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = rows or []
        self.error: BaseException | None = None
        self.fetched: list[tuple[str, tuple[Any, ...]]] = []
        self.terminated = False
        self._closed = False

    async def fetch(self, sql: str, *params: Any) -> list[FakeRecord]:
        self.fetched.append((sql, params))
        if self.error is not None:
            raise self.error
        return [FakeRecord(row) for row in self.rows]

    def is_closed(self) -> bool:
        return self._closed or self.terminated

    def terminate(self) -> None:
        self.terminated = True

    async def close(self, timeout: float | None = None) -> None:
        self._closed = True


@pytest.mark.anyio
async def test_mysql_select_returns_rows_and_columns() -> None:
    raw = FakeMySQL(rows=[{"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"}])
    conn = MySQLConnection(raw)

    result = await conn.execute("SELECT id, name FROM users WHERE team = %s", ["core"], timeout=1)

    assert isinstance(conn, DatabaseConnection)
    assert result.columns == ("id", "name")
    assert [row["name"] for row in result] == ["Ada", "Grace"]
    assert result.row_count == 2
    assert raw.executed == [("SELECT id, name FROM users WHERE team = %s", ("core",))]
    assert raw.cursor_classes == [aiomysql.DictCursor]


@pytest.mark.anyio
async def test_mysql_write_reports_insert_id() -> None:
    raw = FakeMySQL()
    conn = MySQLConnection(raw)

    result = await conn.execute("INSERT INTO users (name) VALUES (%s)", ["Ada"], timeout=1)

    assert result.last_insert_id == 42
    assert result.row_count == 1
    assert len(result) == 0


@pytest.mark.anyio
async def test_mysql_statement_without_params_passes_none() -> None:
    raw = FakeMySQL(rows=[])
    conn = MySQLConnection(raw)

    await conn.execute("SHOW TABLES", timeout=1)

    assert raw.executed == [("SHOW TABLES", None)]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "error",
    [
        aiomysql.OperationalError(2006, "MySQL server has gone away"),
        aiomysql.OperationalError(2013, "Lost connection to MySQL server during query"),
        aiomysql.InterfaceError("(0, '')"),
        ConnectionResetError("reset by peer"),
    ],
)
async def test_mysql_connection_errors_become_connection_lost(error: BaseException) -> None:
    raw = FakeMySQL(rows=[])
    raw.error = error
    conn = MySQLConnection(raw)

    with pytest.raises(ConnectionLost):
        await conn.execute("SELECT * FROM users", timeout=1)


@pytest.mark.anyio
async def test_mysql_semantic_errors_become_query_error() -> None:
    raw = FakeMySQL(rows=[])
    raw.error = aiomysql.ProgrammingError(1064, "You have an error in your SQL syntax")
    conn = MySQLConnection(raw)

    with pytest.raises(QueryError) as excinfo:
        await conn.execute("SELEC 1", timeout=1)

    assert excinfo.value.code == 1064
    assert excinfo.value.retryable is False


@pytest.mark.anyio
async def test_mysql_timeout_aborts_connection() -> None:
    raw = FakeMySQL(rows=[])
    raw.delay = 1.0
    conn = MySQLConnection(raw)

    with pytest.raises(ConnectionLost):
        await conn.execute("SELECT SLEEP(10)", timeout=0.01)

    assert conn.closed is True


@pytest.mark.anyio
async def test_mysql_close_is_idempotent() -> None:
    raw = FakeMySQL()
    conn = MySQLConnection(raw)

    await conn.close()
    await conn.close()

    assert conn.closed is True


@pytest.mark.anyio
async def test_mysql_driver_connects_through_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    async def fake_connect(**kwargs: Any) -> FakeMySQL:
        calls.append(kwargs)
        return FakeMySQL()

    monkeypatch.setattr(drivers_module.aiomysql, "connect", fake_connect)

    conn = await MySQLDriver().connect(ENDPOINT, TARGET)

    assert isinstance(conn, MySQLConnection)
    assert calls[0]["host"] == "127.0.0.1"
    assert calls[0]["port"] == 40000
    assert calls[0]["user"] == "app"
    assert calls[0]["password"] == "secret"
    assert calls[0]["db"] == "appdb"
    assert calls[0]["autocommit"] is True


@pytest.mark.anyio
async def test_mysql_driver_connect_failure_is_connection_lost(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_connect(**kwargs: Any) -> FakeMySQL:
        raise aiomysql.OperationalError(2003, "Can't connect to MySQL server")

    monkeypatch.setattr(drivers_module.aiomysql, "connect", fake_connect)

    with pytest.raises(ConnectionLost):
        await MySQLDriver().connect(ENDPOINT, TARGET)


@pytest.mark.anyio
async def test_postgres_fetch_uses_positional_params() -> None:
    raw = FakePostgres(rows=[{"id": 1, "email": "ada@example.com"}])
    conn = PostgresConnection(raw)

    result = await conn.execute("SELECT id, email FROM users WHERE id = $1", [1], timeout=1)

    assert raw.fetched == [("SELECT id, email FROM users WHERE id = $1", (1,))]
    assert result.columns == ("id", "email")
    assert result.first() == {"id": 1, "email": "ada@example.com"}


@pytest.mark.anyio
async def test_postgres_error_classification() -> None:
    raw = FakePostgres()
    conn = PostgresConnection(raw)

    raw.error = asyncpg.exceptions.UndefinedTableError('relation "missing" does not exist')
    with pytest.raises(QueryError):
        await conn.execute("SELECT * FROM missing", timeout=1)

    raw.error = asyncpg.exceptions.ConnectionDoesNotExistError("connection was closed in the middle of operation")
    with pytest.raises(ConnectionLost):
        await conn.execute("SELECT 1", timeout=1)


@pytest.mark.anyio
async def test_postgres_close_is_idempotent() -> None:
    raw = FakePostgres()
    conn = PostgresConnection(raw)

    await conn.close()
    await conn.close()

    assert conn.closed is True


def test_driver_for_known_and_unknown_names() -> None:
    assert isinstance(driver_for("mysql"), MySQLDriver)
    assert isinstance(driver_for("postgres"), PostgresDriver)

    with pytest.raises(ValueError):
        driver_for("sqlite")
