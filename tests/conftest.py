"""Shared fixtures and fakes for relay tests."""

import asyncio
import json
import socket

import pytest
import pytest_asyncio

from udprelay.config import DeploymentMode
from udprelay.errors import BindError, SendError
from udprelay.resolver.address import AddressResolver
from udprelay.session import ControlChannel, SessionManager


class FakeChannel(ControlChannel):
    """Records delivered messages and lets tests await them."""
    
    def __init__(self):
        self.messages: asyncio.Queue[dict] = asyncio.Queue()
        self.delivered: list[dict] = []
        self.closed_with: tuple[int, str] | None = None
    
    def deliver(self, message: str) -> bool:
        if self.closed_with is not None:
            return False
        decoded = json.loads(message)
        self.delivered.append(decoded)
        self.messages.put_nowait(decoded)
        return True
    
    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)
    
    async def next(self, timeout: float = 2.0) -> dict:
        return await asyncio.wait_for(self.messages.get(), timeout=timeout)
    
    async def next_of(self, message_type: str, timeout: float = 2.0) -> dict:
        while True:
            message = await self.next(timeout)
            if message["type"] == message_type:
                return message
    
    def of_type(self, message_type: str) -> list[dict]:
        return [m for m in self.delivered if m["type"] == message_type]


class FakeEndpoint:
    """UdpEndpoint stand-in that records calls and can be told to fail."""
    
    instances: list["FakeEndpoint"] = []
    bind_error: BindError | None = None
    send_error: OSError | None = None
    
    def __init__(self, name: str = "udp"):
        self.name = name
        self.bind_calls: list[tuple[str, int]] = []
        self.sent: list[tuple[bytes, str, int]] = []
        self.closed = False
        self.callback = None
        FakeEndpoint.instances.append(self)
    
    def on_receive(self, callback) -> None:
        self.callback = callback
    
    async def bind(self, ip: str, port: int) -> tuple[str, int]:
        self.bind_calls.append((ip, port))
        if FakeEndpoint.bind_error is not None:
            raise FakeEndpoint.bind_error
        return ip, port or 40000 + len(FakeEndpoint.instances)
    
    async def send(self, data: bytes, ip: str, port: int) -> int:
        if FakeEndpoint.send_error is not None:
            raise SendError.from_os_error(FakeEndpoint.send_error)
        self.sent.append((data, ip, port))
        return len(data)
    
    def close(self) -> None:
        self.closed = True
        self.callback = None
    
    def inject(self, data: bytes, ip: str, port: int) -> None:
        if self.callback is not None:
            self.callback(data, ip, port)


@pytest.fixture(autouse=True)
def reset_fake_endpoint():
    FakeEndpoint.instances = []
    FakeEndpoint.bind_error = None
    FakeEndpoint.send_error = None
    yield


@pytest.fixture
def resolver():
    """Resolver with no external lookup and no local interfaces."""
    return AddressResolver(lookup=None, public_hostname=None, interface_provider=lambda: [])


def make_manager(resolver, **kwargs) -> SessionManager:
    options = {
        "deployment_mode": DeploymentMode.UNRESTRICTED,
        "idle_timeout_seconds": 30.0,
        "sweep_interval_seconds": 60.0,
        "server_info": {"version": "test", "maxConnections": 5},
    }
    options.update(kwargs)
    return SessionManager(resolver=resolver, **options)


@pytest_asyncio.fixture
async def manager(resolver):
    """Manager using real UDP endpoints."""
    manager = make_manager(resolver)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def fake_manager(resolver):
    """Manager using FakeEndpoint instead of OS sockets."""
    manager = make_manager(resolver, endpoint_factory=FakeEndpoint)
    yield manager
    await manager.shutdown()


@pytest.fixture
def echo_socket():
    """A blocking-free UDP echo peer bound on loopback."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.setblocking(False)
    yield sock
    sock.close()


async def run_echo(sock: socket.socket, count: int = 1) -> None:
    loop = asyncio.get_running_loop()
    for _ in range(count):
        data, addr = await loop.sock_recvfrom(sock, 65535)
        await loop.sock_sendto(sock, data, addr)
