"""Tests for the SSH tunnel and direct transports."""

from __future__ import annotations

import asyncio
from typing import Any

import asyncssh
import pytest

from tunnelpool import transport as transport_module
from tunnelpool.config import TargetConfig, TunnelConfig
from tunnelpool.errors import TransportError
from tunnelpool.transport import DirectTransport, ForwardedEndpoint, SSHTunnelTransport, Transport, TransportState

TARGET = TargetConfig(username="app", password="secret", database="appdb")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeListener:
    def __init__(self, port: int) -> None:
        self.port = port
        self.closed = False

    def get_port(self) -> int:
        return self.port

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeSSHConnection:
    def __init__(self, client: Any, forward_error: BaseException | None = None) -> None:
        self.client = client
        self.forward_error = forward_error
        self.forwards: list[tuple[str, int, str, int]] = []
        self.listener: FakeListener | None = None
        self.closed = False

    async def forward_local_port(self, listen_host: str, listen_port: int, dest_host: str, dest_port: int) -> FakeListener:
        self.forwards.append((listen_host, listen_port, dest_host, dest_port))
        if self.forward_error is not None:
            raise self.forward_error
        self.listener = FakeListener(50000 + len(self.forwards))
        return self.listener

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeAsyncSSH:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connections: list[FakeSSHConnection] = []
        self.error: BaseException | None = None
        self.forward_error: BaseException | None = None
        self.hang = False

    async def connect(self, host: str, **options: Any) -> FakeSSHConnection:
        client = options.pop("client_factory")()
        self.calls.append((host, options))
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        conn = FakeSSHConnection(client, self.forward_error)
        self.connections.append(conn)
        return conn


@pytest.fixture
def fake_ssh(monkeypatch: pytest.MonkeyPatch) -> FakeAsyncSSH:
    fake = FakeAsyncSSH()
    monkeypatch.setattr(transport_module.asyncssh, "connect", fake.connect)
    return fake


def _tunnel(**overrides: Any) -> TunnelConfig:
    values: dict[str, Any] = {"host": "bastion.example.com", "port": 65002, "username": "deploy", "password": "hunter2"}
    values.update(overrides)
    return TunnelConfig(**values)


@pytest.mark.anyio
async def test_establish_opens_session_and_forward(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(), TARGET)

    endpoint = await transport.establish()

    assert endpoint == ForwardedEndpoint("127.0.0.1", 50001)
    assert transport.state is TransportState.ESTABLISHED
    host, options = fake_ssh.calls[0]
    assert host == "bastion.example.com"
    assert options["port"] == 65002
    assert options["username"] == "deploy"
    assert options["password"] == "hunter2"
    assert "client_keys" not in options
    assert fake_ssh.connections[0].forwards == [("127.0.0.1", 0, "127.0.0.1", 3306)]


@pytest.mark.anyio
async def test_establish_passes_client_keys(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(password=None, client_keys=("~/.ssh/id_ed25519",)), TARGET)

    await transport.establish()

    _, options = fake_ssh.calls[0]
    assert options["client_keys"] == ["~/.ssh/id_ed25519"]
    assert "password" not in options


@pytest.mark.anyio
async def test_authentication_failure_is_classified(fake_ssh: FakeAsyncSSH) -> None:
    fake_ssh.error = asyncssh.PermissionDenied("Permission denied")
    transport = SSHTunnelTransport(_tunnel(), TARGET)

    with pytest.raises(TransportError) as excinfo:
        await transport.establish()

    assert excinfo.value.cause == "auth"
    assert transport.state is TransportState.IDLE


@pytest.mark.anyio
async def test_network_failure_is_classified(fake_ssh: FakeAsyncSSH) -> None:
    fake_ssh.error = ConnectionRefusedError("connection refused")
    transport = SSHTunnelTransport(_tunnel(), TARGET)

    with pytest.raises(TransportError) as excinfo:
        await transport.establish()

    assert excinfo.value.cause == "network"
    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_connect_timeout_is_classified(fake_ssh: FakeAsyncSSH) -> None:
    fake_ssh.hang = True
    transport = SSHTunnelTransport(_tunnel(connect_timeout=0.01), TARGET)

    with pytest.raises(TransportError) as excinfo:
        await transport.establish()

    assert excinfo.value.cause == "timeout"


@pytest.mark.anyio
async def test_rejected_forward_closes_session(fake_ssh: FakeAsyncSSH) -> None:
    fake_ssh.forward_error = asyncssh.ChannelOpenError(asyncssh.OPEN_ADMINISTRATIVELY_PROHIBITED, "forwarding disabled")
    transport = SSHTunnelTransport(_tunnel(), TARGET)

    with pytest.raises(TransportError) as excinfo:
        await transport.establish()

    assert excinfo.value.cause == "forward"
    assert fake_ssh.connections[0].closed is True
    assert transport.endpoint is None


@pytest.mark.anyio
async def test_remote_disconnect_notifies_subscribers(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(), TARGET)
    await transport.establish()
    seen: list[BaseException | None] = []
    transport.subscribe(seen.append)
    conn = fake_ssh.connections[0]
    reason = ConnectionResetError("reset by peer")

    conn.client.connection_lost(reason)

    assert seen == [reason]
    assert transport.state is TransportState.CLOSED
    assert conn.listener is not None and conn.listener.closed is True


@pytest.mark.anyio
async def test_unsubscribed_listener_is_not_called(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(), TARGET)
    await transport.establish()
    seen: list[BaseException | None] = []
    unsubscribe = transport.subscribe(seen.append)

    unsubscribe()
    fake_ssh.connections[0].client.connection_lost(None)

    assert seen == []


@pytest.mark.anyio
async def test_close_is_idempotent_and_silent(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(), TARGET)
    await transport.establish()
    seen: list[BaseException | None] = []
    transport.subscribe(seen.append)
    conn = fake_ssh.connections[0]

    await transport.close()
    await transport.close()
    conn.client.connection_lost(None)

    assert conn.closed is True
    assert transport.state is TransportState.CLOSED
    assert seen == []


@pytest.mark.anyio
async def test_reestablish_replaces_previous_session(fake_ssh: FakeAsyncSSH) -> None:
    transport = SSHTunnelTransport(_tunnel(), TARGET)
    await transport.establish()

    await transport.establish()

    assert len(fake_ssh.connections) == 2
    assert fake_ssh.connections[0].closed is True
    assert fake_ssh.connections[1].closed is False


@pytest.mark.anyio
async def test_direct_transport_targets_database() -> None:
    target = TargetConfig(host="db.internal", port=5432, username="app", password="secret", database="appdb")
    transport = DirectTransport(target)

    assert isinstance(transport, Transport)
    assert await transport.establish() == ForwardedEndpoint("db.internal", 5432)
    await transport.close()
    assert transport.state is TransportState.CLOSED
