"""Health and reconnect supervisor owning the process-wide transport and pool.

The supervisor is the only component allowed to create, replace or dispose
of the transport and the pool. Its lifecycle is an explicit state machine::

    UNINITIALIZED -> CONNECTING -> READY -> DEGRADED -> RECONNECTING -> CONNECTING
                      |    ^                                 |
                      v    |                                 v
                  RECONNECTING ---------------------> UNINITIALIZED

and every state may move to the terminal ``SHUTDOWN``. A rebuild runs as a
single task; concurrent demands await that task instead of starting another.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from enum import Enum

from .config import Settings
from .drivers import DatabaseDriver, driver_for
from .errors import ConnectionUnavailable, TunnelPoolError
from .pool import ConnectionPool
from .transport import DirectTransport, SSHTunnelTransport, Transport

LOG = logging.getLogger(__name__)


class SupervisorState(str, Enum):
    """Lifecycle states of the supervised transport + pool pair."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    SHUTDOWN = "shutdown"


_S = SupervisorState
TRANSITIONS: dict[SupervisorState, frozenset[SupervisorState]] = {
    _S.UNINITIALIZED: frozenset({_S.CONNECTING, _S.SHUTDOWN}),
    _S.CONNECTING: frozenset({_S.READY, _S.RECONNECTING, _S.SHUTDOWN}),
    _S.READY: frozenset({_S.DEGRADED, _S.SHUTDOWN}),
    _S.DEGRADED: frozenset({_S.RECONNECTING, _S.SHUTDOWN}),
    _S.RECONNECTING: frozenset({_S.CONNECTING, _S.UNINITIALIZED, _S.SHUTDOWN}),
    _S.SHUTDOWN: frozenset(),
}

StateListener = Callable[[SupervisorState, SupervisorState], None]
TransportFactory = Callable[[], Transport]
Sleep = Callable[[float], Awaitable[None]]


class InvalidTransition(RuntimeError):
    """Raised when the supervisor is asked to make an illegal transition."""


def default_transport_factory(settings: Settings) -> TransportFactory:
    """Tunnel through the bastion when one is configured, else connect directly."""

    def _factory() -> Transport:
        if settings.tunnel is not None:
            return SSHTunnelTransport(settings.tunnel, settings.target)
        return DirectTransport(settings.target)

    return _factory


class Supervisor:
    """Owns the transport and pool, rebuilding them on failure."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport_factory: TransportFactory | None = None,
        driver: DatabaseDriver | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._transport_factory = transport_factory or default_transport_factory(settings)
        self._driver = driver or driver_for(settings.target.driver)
        self._sleep = sleep
        self._state = SupervisorState.UNINITIALIZED
        self._transport: Transport | None = None
        self._transport_unsubscribe: Callable[[], None] | None = None
        self._pool: ConnectionPool | None = None
        self._rebuild_task: asyncio.Task[ConnectionPool] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self._listeners: set[StateListener] = set()
        self.rebuilds = 0
        self.connect_attempts = 0

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def pool(self) -> ConnectionPool | None:
        """Current pool, only while READY."""

        return self._pool if self._state is SupervisorState.READY else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state transitions; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def ensure_ready(self) -> ConnectionPool:
        """Return a probed pool, building or awaiting a rebuild as needed."""

        while True:
            if self._state is SupervisorState.SHUTDOWN:
                raise ConnectionUnavailable("Database access is shut down")
            if self._state is SupervisorState.READY and self._pool is not None:
                return self._pool
            task = self._rebuild_task
            if task is None or task.done():
                task = self._start_rebuild()
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                # Only swallow the cancellation of the shared rebuild (shutdown),
                # never our own.
                if task.cancelled():
                    continue
                raise

    def mark_degraded(self, reason: BaseException | str, *, pool: ConnectionPool | None = None) -> None:
        """Report a connection-level failure; triggers an immediate rebuild.

        Failures observed on a pool that has already been replaced are ignored.
        """

        if self._state is not SupervisorState.READY:
            return
        if pool is not None and pool is not self._pool:
            return
        LOG.warning("Connection degraded: %s", reason)
        self._transition(SupervisorState.DEGRADED)
        self._start_rebuild()

    async def check_health(self) -> bool:
        """Probe the current pool; degrade it if the probe fails."""

        pool = self.pool
        if pool is None:
            return False
        if await pool.probe():
            return True
        self.mark_degraded("liveness probe failed", pool=pool)
        return False

    def start_health_checks(self, interval: float | None = None) -> None:
        """Run ``check_health`` every ``interval`` seconds in the background."""

        interval = self._settings.health_check_interval if interval is None else interval
        if interval <= 0 or self._health_task is not None:
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop(interval))

    async def shutdown(self, drain_timeout: float | None = None) -> None:
        """Stop supervising, drain the pool and close the transport. Idempotent."""

        if self._state is SupervisorState.SHUTDOWN:
            return
        self._transition(SupervisorState.SHUTDOWN)
        LOG.info("Shutting down database access")
        for task in (self._health_task, self._rebuild_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._health_task, self._rebuild_task):
            if task is not None:
                with suppress(asyncio.CancelledError, TunnelPoolError):
                    await task
        self._health_task = None
        self._rebuild_task = None
        timeout = self._settings.drain_timeout if drain_timeout is None else drain_timeout
        async with self._lock:
            await self._teardown(timeout)
        LOG.info("Database access shut down")

    def _start_rebuild(self) -> asyncio.Task[ConnectionPool]:
        task = asyncio.get_running_loop().create_task(self._rebuild())
        task.add_done_callback(self._rebuild_done)
        self._rebuild_task = task
        return task

    def _rebuild_done(self, task: asyncio.Task[ConnectionPool]) -> None:
        if self._rebuild_task is task:
            self._rebuild_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Surfaced to every awaiting caller; logged here for background rebuilds.
            LOG.error("Database connection could not be rebuilt: %s", exc)

    async def _rebuild(self) -> ConnectionPool:
        self.rebuilds += 1
        async with self._lock:
            try:
                return await self._rebuild_locked()
            except Exception:
                if self._state is not SupervisorState.SHUTDOWN:
                    await self._teardown(0)
                    self._abandon()
                raise

    async def _rebuild_locked(self) -> ConnectionPool:
        if self._state is SupervisorState.DEGRADED:
            self._transition(SupervisorState.RECONNECTING)
        await self._teardown(0)
        retry = self._settings.retry
        last_error: TunnelPoolError | None = None
        for attempt in range(1, retry.reconnect_attempts + 1):
            self._transition(SupervisorState.CONNECTING)
            self.connect_attempts += 1
            LOG.info("Connecting to database (attempt %s/%s)", attempt, retry.reconnect_attempts)
            try:
                pool = await self._connect()
            except TunnelPoolError as exc:
                last_error = exc
                await self._teardown(0)
                self._transition(SupervisorState.RECONNECTING)
                if attempt == retry.reconnect_attempts:
                    break
                delay = retry.backoff(attempt)
                LOG.warning("Connection attempt %s failed: %s; retrying in %.2fs", attempt, exc, delay)
                await self._sleep(delay)
                continue
            self._transition(SupervisorState.READY)
            LOG.info("Database connection ready")
            return pool
        raise ConnectionUnavailable(
            f"Database unavailable after {retry.reconnect_attempts} connection attempt(s): {last_error}"
        ) from last_error

    def _abandon(self) -> None:
        # Walk back to UNINITIALIZED so the next demand starts from scratch.
        if self._state is SupervisorState.CONNECTING:
            self._transition(SupervisorState.RECONNECTING)
        if self._state is SupervisorState.RECONNECTING:
            self._transition(SupervisorState.UNINITIALIZED)

    async def _connect(self) -> ConnectionPool:
        transport = self._transport_factory()
        self._transport = transport
        self._transport_unsubscribe = transport.subscribe(self._handle_transport_closed)
        endpoint = await transport.establish()
        self._pool = await ConnectionPool.initialize(self._driver, endpoint, self._settings.target)
        return self._pool

    async def _teardown(self, drain_timeout: float) -> None:
        # Pool first: it depends on the transport's endpoint.
        pool, transport = self._pool, self._transport
        self._pool = None
        self._transport = None
        if self._transport_unsubscribe is not None:
            self._transport_unsubscribe()
            self._transport_unsubscribe = None
        if pool is not None:
            await pool.drain(drain_timeout)
        if transport is not None:
            await transport.close()

    def _handle_transport_closed(self, exc: BaseException | None) -> None:
        self.mark_degraded(f"transport closed ({exc or 'remote end'})", pool=self._pool)

    async def _health_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._state is not SupervisorState.READY:
                continue
            try:
                await self.check_health()
            except Exception:
                LOG.exception("Health check failed unexpectedly")

    def _transition(self, new: SupervisorState) -> None:
        old = self._state
        if new not in TRANSITIONS[old]:
            raise InvalidTransition(f"Illegal transition {old.value} -> {new.value}")
        self._state = new
        LOG.debug("Supervisor %s -> %s", old.value, new.value)
        for listener in tuple(self._listeners):
            listener(old, new)


__all__ = [
    "InvalidTransition",
    "StateListener",
    "Supervisor",
    "SupervisorState",
    "TRANSITIONS",
    "TransportFactory",
    "default_transport_factory",
]
