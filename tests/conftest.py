"""Shared fixtures and in-memory fakes for the peer services."""

import asyncio
import inspect
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from discovery.identity import IdentityService  # noqa: E402
from discovery.trust import TrustStore  # noqa: E402
from p2p.manager import ConnectionManager  # noqa: E402
from p2p.router import MessageRouter  # noqa: E402


class FakeSession:
    """Stands in for an accepted server-side websocket session."""

    def __init__(self, on_send=None):
        self.sent: list[str] = []
        self.closed = False
        self.close_code = None
        self._on_send = on_send

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("Session is closed")
        self.sent.append(text)
        if self._on_send is not None:
            self._on_send(text)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def messages(self) -> list[dict]:
        return [json.loads(t) for t in self.sent]


class FakeClientConnection:
    """Stands in for a ``websockets`` client connection."""

    def __init__(self, on_send=None):
        self.sent: list[str] = []
        self.closed = False
        self.on_send = on_send
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, text: str) -> None:
        self._inbox.put_nowait(text)

    def finish(self) -> None:
        """Peer closed the connection cleanly."""
        self._inbox.put_nowait(None)

    async def send(self, text: str) -> None:
        self.sent.append(text)
        if self.on_send is not None:
            result = self.on_send(text)
            if inspect.isawaitable(result):
                await result

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def messages(self) -> list[dict]:
        return [json.loads(t) for t in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakePeerServer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        if self.fail:
            raise OSError("Address already in use")
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


class FakeServerFactory:
    """server_factory that records every listener it builds."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.servers: list[FakePeerServer] = []

    def __call__(self, manager) -> FakePeerServer:
        server = FakePeerServer(fail=self.fail)
        self.servers.append(server)
        return server


class FakeConnector:
    """connector that hands out FakeClientConnections, optionally failing first."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.uris: list[str] = []
        self.connections: list[FakeClientConnection] = []

    async def __call__(self, uri: str, timeout: float) -> FakeClientConnection:
        self.uris.append(uri)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("Connection refused")
        conn = FakeClientConnection()
        self.connections.append(conn)
        return conn


async def settle(condition=None, timeout: float = 2.0) -> None:
    """Let background tasks run, optionally until ``condition()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        await asyncio.sleep(0.01)
        if condition is None or condition() or loop.time() > deadline:
            return


@pytest.fixture
def server_factory() -> FakeServerFactory:
    return FakeServerFactory()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def identity(tmp_path: Path) -> IdentityService:
    return IdentityService(tmp_path, default_name="Test Device")


@pytest.fixture
def trust_store(tmp_path: Path) -> TrustStore:
    return TrustStore(tmp_path)


@pytest.fixture
def router() -> MessageRouter:
    return MessageRouter()


@pytest.fixture
def manager(identity, router, server_factory, connector) -> ConnectionManager:
    manager = ConnectionManager(
        identity, router, server_factory=server_factory, connector=connector
    )
    router.set_authorizer(manager.is_paired)
    return manager
