"""Bounded connection pool multiplexed over a single transport endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from .config import TargetConfig
from .drivers import DatabaseConnection, DatabaseDriver
from .errors import ConnectionLost, PoolClosed, PoolError, PoolExhausted, QueryError, TunnelPoolError
from .transport import ForwardedEndpoint

LOG = logging.getLogger(__name__)

PROBE_SQL = "SELECT 1"


class PoolState(Enum):
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class PoolStats:
    """Point-in-time view of pool occupancy."""

    size: int
    idle: int
    in_use: int
    waiting: int
    state: PoolState


class ConnectionPool:
    """Hands out connections to the database reached through ``endpoint``.

    Connections are opened lazily up to ``target.pool_size``. When every slot
    is busy, acquirers wait in FIFO order; at most ``target.queue_bound`` may
    wait at once and none longer than ``target.acquire_timeout``. Both limits
    fail with ``PoolExhausted``.
    """

    def __init__(self, driver: DatabaseDriver, endpoint: ForwardedEndpoint, target: TargetConfig) -> None:
        self._driver = driver
        self._endpoint = endpoint
        self._target = target
        self._idle: deque[DatabaseConnection] = deque()
        self._in_use: set[DatabaseConnection] = set()
        # Futures resolve to a connection, or to None when a slot was freed
        # and the waiter must open its own connection.
        self._waiters: deque[asyncio.Future[DatabaseConnection | None]] = deque()
        self._size = 0
        self._state = PoolState.OPEN
        self._returned = asyncio.Event()

    @classmethod
    async def initialize(
        cls,
        driver: DatabaseDriver,
        endpoint: ForwardedEndpoint,
        target: TargetConfig,
    ) -> "ConnectionPool":
        """Create a pool and verify it with a liveness probe before returning it."""

        pool = cls(driver, endpoint, target)
        try:
            await pool._probe_or_raise()
        except BaseException as exc:
            await pool.drain(timeout=0)
            if isinstance(exc, (ConnectionLost, QueryError)):
                raise PoolError(f"Liveness probe against {endpoint.host}:{endpoint.port} failed: {exc}") from exc
            raise
        LOG.info("Connection pool ready (max %s connections)", target.pool_size)
        return pool

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def endpoint(self) -> ForwardedEndpoint:
        return self._endpoint

    @property
    def stats(self) -> PoolStats:
        return PoolStats(
            size=self._size,
            idle=len(self._idle),
            in_use=len(self._in_use),
            waiting=len(self._waiters),
            state=self._state,
        )

    async def acquire(self) -> DatabaseConnection:
        """Borrow a connection, waiting in line if every slot is busy."""

        self._ensure_open()
        while self._idle:
            conn = self._idle.popleft()
            if not conn.closed:
                return self._checkout(conn)
            self._size -= 1
            LOG.debug("Dropped stale idle connection")
        if self._size < self._target.pool_size:
            self._size += 1
            return self._checkout(await self._open_reserved())
        if len(self._waiters) >= self._target.queue_bound:
            raise PoolExhausted(
                f"All {self._target.pool_size} connections busy and {len(self._waiters)} caller(s) already waiting"
            )

        waiter: asyncio.Future[DatabaseConnection | None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            granted = await asyncio.wait_for(waiter, self._target.acquire_timeout)
        except asyncio.TimeoutError:
            await self._reclaim(waiter)
            raise PoolExhausted(f"Timed out after {self._target.acquire_timeout}s waiting for a connection") from None
        except asyncio.CancelledError:
            await self._reclaim(waiter)
            raise
        finally:
            with suppress(ValueError):
                self._waiters.remove(waiter)
        if granted is None:
            granted = await self._open_reserved()
        return self._checkout(granted)

    async def release(self, conn: DatabaseConnection, *, discard: bool = False) -> None:
        """Return a borrowed connection; ``discard`` closes it instead of reusing it."""

        if conn not in self._in_use:
            return
        self._in_use.discard(conn)
        if not self._in_use:
            self._returned.set()
        if self._state is not PoolState.OPEN:
            self._size -= 1
            await self._close(conn)
            return
        if discard or conn.closed:
            await self._close(conn)
            self._dispatch(None)
            return
        self._dispatch(conn)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[DatabaseConnection]:
        """Borrow a connection for the duration of the block."""

        conn = await self.acquire()
        discard = False
        try:
            yield conn
        except ConnectionLost:
            discard = True
            raise
        except asyncio.CancelledError:
            # A statement interrupted mid-flight leaves the protocol state unknown.
            discard = True
            raise
        finally:
            await self.release(conn, discard=discard)

    async def probe(self) -> bool:
        """Cheap liveness check; a saturated pool counts as alive."""

        try:
            await self._probe_or_raise()
        except PoolExhausted:
            LOG.debug("Pool saturated during probe; treating as alive")
            return True
        except TunnelPoolError as exc:
            LOG.warning("Pool liveness probe failed: %s", exc)
            return False
        return True

    async def drain(self, timeout: float | None = None) -> None:
        """Reject new work, let borrowed connections come back, close everything."""

        if self._state is PoolState.CLOSED:
            return
        self._state = PoolState.DRAINING
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolClosed("Pool is draining"))
        while self._idle:
            self._size -= 1
            await self._close(self._idle.popleft())
        if self._in_use:
            LOG.info("Waiting for %s borrowed connection(s) to return", len(self._in_use))
            self._returned.clear()
            try:
                await asyncio.wait_for(self._returned.wait(), timeout)
            except asyncio.TimeoutError:
                LOG.warning("Closing %s connection(s) still in use after drain timeout", len(self._in_use))
            for conn in tuple(self._in_use):
                self._in_use.discard(conn)
                self._size -= 1
                await self._close(conn)
        self._state = PoolState.CLOSED
        LOG.info("Connection pool closed")

    async def _probe_or_raise(self) -> None:
        async with self.connection() as conn:
            await conn.execute(PROBE_SQL, timeout=self._target.query_timeout)

    def _ensure_open(self) -> None:
        if self._state is not PoolState.OPEN:
            raise PoolClosed(f"Pool is {self._state.value}")

    def _checkout(self, conn: DatabaseConnection) -> DatabaseConnection:
        self._in_use.add(conn)
        return conn

    async def _open_reserved(self) -> DatabaseConnection:
        # Caller has already counted this connection in self._size.
        try:
            conn = await asyncio.wait_for(
                self._driver.connect(self._endpoint, self._target),
                self._target.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._dispatch(None)
            raise ConnectionLost(f"Opening a connection timed out after {self._target.connect_timeout}s") from exc
        except BaseException:
            self._dispatch(None)
            raise
        if self._state is not PoolState.OPEN:
            self._size -= 1
            await self._close(conn)
            raise PoolClosed(f"Pool is {self._state.value}")
        LOG.debug("Opened connection %s/%s", self._size, self._target.pool_size)
        return conn

    def _dispatch(self, conn: DatabaseConnection | None) -> None:
        """Hand a connection (or a free slot) to the first live waiter."""

        if self._state is PoolState.OPEN:
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_result(conn)
                    return
        if conn is None:
            self._size -= 1
        elif self._state is PoolState.OPEN:
            self._idle.append(conn)
        else:
            raise RuntimeError(f"Cannot hand a connection back to a {self._state.value} pool")

    async def _reclaim(self, waiter: asyncio.Future[DatabaseConnection | None]) -> None:
        # The waiter may have been granted right as it gave up.
        if not waiter.done() or waiter.cancelled() or waiter.exception() is not None:
            return
        conn = waiter.result()
        if conn is not None and self._state is not PoolState.OPEN:
            # Granted before a drain started; drain never saw it.
            self._size -= 1
            await self._close(conn)
            return
        self._dispatch(conn)

    async def _close(self, conn: DatabaseConnection) -> None:
        try:
            await conn.close()
        except Exception as exc:  # pragma: no cover - best effort
            LOG.debug("Error closing connection: %s", exc)


__all__ = ["ConnectionPool", "PROBE_SQL", "PoolState", "PoolStats"]
