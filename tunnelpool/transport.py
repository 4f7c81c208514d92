"""Transports that give the pool an endpoint to reach the database through."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Protocol, runtime_checkable

import asyncssh

from .config import TargetConfig, TunnelConfig
from .errors import TransportError

LOG = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"

ClosedListener = Callable[[BaseException | None], None]


class TransportState(Enum):
    IDLE = "idle"
    ESTABLISHED = "established"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class ForwardedEndpoint:
    """Local address whose traffic is carried to the database."""

    host: str
    port: int


@runtime_checkable
class Transport(Protocol):
    """Protocol implemented by transports."""

    @property
    def state(self) -> TransportState:
        """Current lifecycle state."""

    async def establish(self) -> ForwardedEndpoint:
        """Open the transport and return the endpoint to connect to."""

    async def close(self) -> None:
        """Release the transport; safe to call repeatedly."""

    def subscribe(self, listener: ClosedListener) -> Callable[[], None]:
        """Subscribe to unexpected closure; returns an unsubscribe handle."""


class _Listeners:
    def __init__(self) -> None:
        self._listeners: set[ClosedListener] = set()

    def subscribe(self, listener: ClosedListener) -> Callable[[], None]:
        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def emit(self, exc: BaseException | None) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(exc)
            except Exception:
                LOG.exception("Transport closed listener failed")


class _TunnelClient(asyncssh.SSHClient):
    def __init__(self, on_lost: Callable[["_TunnelClient", BaseException | None], None]) -> None:
        self._on_lost = on_lost

    def connection_lost(self, exc: Exception | None) -> None:
        self._on_lost(self, exc)


class SSHTunnelTransport:
    """Single SSH session to a bastion with one local port forward to the target."""

    def __init__(self, tunnel: TunnelConfig, target: TargetConfig, *, local_host: str = LOCAL_HOST) -> None:
        self._tunnel = tunnel
        self._target = target
        self._local_host = local_host
        self._listeners = _Listeners()
        self._conn: asyncssh.SSHClientConnection | None = None
        self._client: _TunnelClient | None = None
        self._listener: asyncssh.SSHListener | None = None
        self._endpoint: ForwardedEndpoint | None = None
        self._state = TransportState.IDLE

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def endpoint(self) -> ForwardedEndpoint | None:
        return self._endpoint

    def subscribe(self, listener: ClosedListener) -> Callable[[], None]:
        return self._listeners.subscribe(listener)

    async def establish(self) -> ForwardedEndpoint:
        if self._conn is not None:
            await self.close()
        tunnel = self._tunnel
        LOG.info("Establishing SSH session to %s:%s", tunnel.host, tunnel.port)
        client = _TunnelClient(self._handle_lost)
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    tunnel.host,
                    port=tunnel.port,
                    client_factory=lambda: client,
                    **self._connect_options(),
                ),
                timeout=tunnel.connect_timeout,
            )
        except asyncssh.PermissionDenied as exc:
            raise TransportError(f"SSH authentication to {tunnel.host} failed: {exc}", cause="auth") from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(
                f"SSH connection to {tunnel.host}:{tunnel.port} timed out after {tunnel.connect_timeout}s",
                cause="timeout",
            ) from exc
        except (OSError, asyncssh.Error) as exc:
            raise TransportError(f"SSH connection to {tunnel.host}:{tunnel.port} failed: {exc}", cause="network") from exc
        self._conn = conn
        self._client = client
        LOG.info("SSH session established")

        try:
            listener = await asyncio.wait_for(
                conn.forward_local_port(self._local_host, 0, self._target.host, self._target.port),
                timeout=tunnel.connect_timeout,
            )
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as exc:
            await self.close()
            raise TransportError(
                f"Port forward to {self._target.host}:{self._target.port} was rejected: {exc}",
                cause="forward",
            ) from exc
        self._listener = listener
        self._endpoint = ForwardedEndpoint(self._local_host, listener.get_port())
        self._state = TransportState.ESTABLISHED
        LOG.info(
            "Port forward established %s:%s -> %s:%s",
            self._endpoint.host,
            self._endpoint.port,
            self._target.host,
            self._target.port,
        )
        return self._endpoint

    async def close(self) -> None:
        conn, listener = self._conn, self._listener
        self._conn = None
        self._client = None
        self._listener = None
        self._endpoint = None
        if self._state is TransportState.ESTABLISHED:
            self._state = TransportState.CLOSED
        if listener is not None:
            listener.close()
            try:
                await listener.wait_closed()
            except (OSError, asyncssh.Error) as exc:  # pragma: no cover - best effort
                LOG.debug("Error closing port forward: %s", exc)
        if conn is not None:
            conn.close()
            try:
                await conn.wait_closed()
            except (OSError, asyncssh.Error) as exc:  # pragma: no cover - best effort
                LOG.debug("Error closing SSH session: %s", exc)
            LOG.info("SSH session closed")

    def _connect_options(self) -> dict[str, Any]:
        tunnel = self._tunnel
        options: dict[str, Any] = {
            "username": tunnel.username,
            "known_hosts": tunnel.known_hosts,
            "keepalive_interval": tunnel.keepalive_interval,
            "keepalive_count_max": tunnel.keepalive_count_max,
        }
        if tunnel.password is not None:
            options["password"] = tunnel.password.get_secret_value()
        if tunnel.client_keys:
            options["client_keys"] = list(tunnel.client_keys)
        return options

    def _handle_lost(self, client: _TunnelClient, exc: BaseException | None) -> None:
        # Sessions we closed ourselves were already detached in close().
        if client is not self._client:
            return
        LOG.warning("SSH session to %s dropped: %s", self._tunnel.host, exc or "closed by remote")
        if self._listener is not None:
            self._listener.close()
        self._conn = None
        self._client = None
        self._listener = None
        self._endpoint = None
        self._state = TransportState.CLOSED
        self._listeners.emit(exc)


class DirectTransport:
    """Transport for targets reachable without a bastion."""

    def __init__(self, target: TargetConfig) -> None:
        self._target = target
        self._listeners = _Listeners()
        self._state = TransportState.IDLE

    @property
    def state(self) -> TransportState:
        return self._state

    def subscribe(self, listener: ClosedListener) -> Callable[[], None]:
        return self._listeners.subscribe(listener)

    async def establish(self) -> ForwardedEndpoint:
        self._state = TransportState.ESTABLISHED
        return ForwardedEndpoint(self._target.host, self._target.port)

    async def close(self) -> None:
        if self._state is TransportState.ESTABLISHED:
            self._state = TransportState.CLOSED


__all__ = [
    "ClosedListener",
    "DirectTransport",
    "ForwardedEndpoint",
    "SSHTunnelTransport",
    "Transport",
    "TransportState",
]
