"""Query facade consumed by the HTTP layer."""

from __future__ import annotations

import asyncio
import atexit
import logging
import threading
from typing import Any, Coroutine, Sequence, TypeVar

from .cache import QueryCache, fingerprint
from .config import Settings
from .errors import ConnectionUnavailable, QueryExhausted, TunnelPoolError
from .models import QueryResult, returns_rows
from .pool import ConnectionPool
from .supervisor import Sleep, Supervisor, SupervisorState

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """Narrow ``query``/``shutdown`` interface over the supervised pool.

    Connection-level failures are retried up to ``max_attempts`` times with
    exponential backoff, marking the pool degraded each time so the next
    attempt runs on a rebuilt one. Semantic errors, ``PoolExhausted`` and
    ``ConnectionUnavailable`` are raised immediately.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        supervisor: Supervisor | None = None,
        cache: QueryCache | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._supervisor = supervisor or Supervisor(settings, sleep=sleep)
        if cache is None and settings.cache.enabled:
            cache = QueryCache(settings.cache.ttl, max_entries=settings.cache.max_entries)
        self._cache = cache
        self._sleep = sleep
        self._closed = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def supervisor(self) -> Supervisor:
        return self._supervisor

    @property
    def cache(self) -> QueryCache | None:
        return self._cache

    @property
    def state(self) -> SupervisorState:
        return self._supervisor.state

    async def start(self) -> None:
        """Connect eagerly and begin periodic health checks."""

        await self._supervisor.ensure_ready()
        self._supervisor.start_health_checks()

    async def query(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        use_cache: bool | None = None,
        max_attempts: int | None = None,
    ) -> QueryResult:
        """Run a statement and return its rows."""

        if self._closed:
            raise ConnectionUnavailable("Database access is shut down")
        params = tuple(params)
        reading = returns_rows(sql)
        key: str | None = None
        if self._cache is not None and reading and (use_cache is None or use_cache):
            key = fingerprint(sql, params)
            cached = self._cache.get(key)
            if cached is not None:
                LOG.debug("Cache hit for %s", key[:12])
                return cached

        attempts = max_attempts or self._settings.retry.query_attempts
        last_error: TunnelPoolError | None = None
        for attempt in range(1, attempts + 1):
            pool = await self._supervisor.ensure_ready()
            try:
                result = await self._execute(pool, sql, params)
            except TunnelPoolError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                self._supervisor.mark_degraded(exc, pool=pool)
                if attempt < attempts:
                    delay = self._settings.retry.backoff(attempt)
                    LOG.warning("Query attempt %s/%s failed: %s; retrying in %.2fs", attempt, attempts, exc, delay)
                    await self._sleep(delay)
                continue
            if self._cache is not None:
                if key is not None:
                    self._cache.set(key, result)
                elif not reading and self._settings.cache.invalidate_on_write:
                    self._cache.clear()
            return result
        raise QueryExhausted(attempts, last_error) from last_error

    async def shutdown(self) -> None:
        """Stop accepting queries, drain the pool, close the tunnel. Idempotent."""

        if self._closed:
            return
        self._closed = True
        await self._supervisor.shutdown()

    async def __aenter__(self) -> "Database":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def _execute(self, pool: ConnectionPool, sql: str, params: tuple[Any, ...]) -> QueryResult:
        async with pool.connection() as conn:
            return await conn.execute(sql, params, timeout=self._settings.target.query_timeout)


class BlockingDatabase:
    """Thread-safe synchronous wrapper for callers without an event loop.

    The facade runs on a private event loop in a daemon thread; any number of
    threads may call ``query`` concurrently.
    """

    def __init__(self, settings: Settings, **kwargs: Any) -> None:
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self._loop.run_forever,
            name="tunnelpool-loop",
            daemon=True,
        )
        self._loop_thread.start()
        self._database = Database(settings, **kwargs)
        # The loop thread is a daemon; drain and close the tunnel before exit.
        atexit.register(self.shutdown)

    @property
    def database(self) -> Database:
        return self._database

    def start(self) -> None:
        self._run(self._database.start())

    def query(self, sql: str, params: Sequence[Any] = (), **options: Any) -> QueryResult:
        return self._run(self._database.query(sql, params, **options))

    def shutdown(self) -> None:
        """Shut the facade down and stop the background loop."""

        if not self._loop.is_running():
            return
        atexit.unregister(self.shutdown)
        try:
            self._run(self._database.shutdown())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._loop_thread.join(timeout=5)

    def _run(self, coro: Coroutine[Any, Any, T]) -> T:
        if not self._loop.is_running():
            coro.close()
            raise ConnectionUnavailable("Database access is shut down")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result()


__all__ = ["BlockingDatabase", "Database"]
