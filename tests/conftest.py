"""
svdrelay Test Configuration

Shared pytest fixtures and fakes for all test types.
"""

import asyncio
from typing import Callable, List, Optional

import pytest

from svdrelay.core.exceptions import StaleHandleError
from svdrelay.relay.backoff import ReconnectPolicy


# Configure pytest collection
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (loopback sockets)")


SAMPLE_BANNER = "220 vdr SVDRP VideoDiskRecorder 2.6.4; Sat Oct 17 12:00:00 2026; UTF-8"


class FakeLineConnection:
    """In-memory stand-in for LineConnection.

    Lines fed with feed() are yielded by read_lines(); drop() or close()
    ends the stream like a peer disconnect.
    """

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.written: List[str] = []
        self.events: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.buffered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def read_lines(self):
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    def feed(self, *lines: str) -> None:
        for line in lines:
            self._queue.put_nowait(line)

    def drop(self) -> None:
        self._queue.put_nowait(None)

    def write_line(self, line: str) -> None:
        if self._closed:
            return
        self.written.append(line)

    async def drain(self) -> None:
        self.events.append("drain")

    def abort(self) -> None:
        self._closed = True
        self.events.append("abort")
        self._queue.put_nowait(None)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.events.append("close")
        self._queue.put_nowait(None)

    async def wait_closed(self) -> None:
        pass


class FakeBackend:
    """Connector producing FakeLineConnections.

    Set ``refusals`` to make the next N attempts fail with
    ConnectionRefusedError.
    """

    def __init__(self) -> None:
        self.connections: List[FakeLineConnection] = []
        self.attempts = 0
        self.refusals = 0

    async def connect(self, host: str, port: int) -> FakeLineConnection:
        self.attempts += 1
        if self.refusals > 0:
            self.refusals -= 1
            raise ConnectionRefusedError(111, "Connection refused")
        conn = FakeLineConnection(f"{host}:{port}")
        self.connections.append(conn)
        return conn

    @property
    def conn(self) -> FakeLineConnection:
        return self.connections[-1]


class FakeClient:
    """ClientHandle recording delivered lines."""

    def __init__(self, session_id: str = "client-test") -> None:
        self.session_id = session_id
        self.connected = True
        self.received: List[str] = []

    def deliver(self, line: str) -> None:
        if not self.connected:
            raise StaleHandleError(self.session_id)
        self.received.append(line)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate on the event loop until it holds or timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_backend() -> FakeBackend:
    """Provide a fake backend connector."""
    return FakeBackend()


@pytest.fixture
def make_client() -> Callable[..., FakeClient]:
    """Provide a factory for fake clients."""
    counter = iter(range(1, 1000))

    def _make(session_id: Optional[str] = None) -> FakeClient:
        return FakeClient(session_id or f"client-{next(counter)}")

    return _make


@pytest.fixture
def fake_connection() -> FakeLineConnection:
    """Provide a fake line connection."""
    return FakeLineConnection("198.51.100.7:40000")


@pytest.fixture
def instant_policy() -> ReconnectPolicy:
    """Backoff policy that never waits."""
    return ReconnectPolicy(initial_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def until():
    """Provide the wait_until helper to tests."""
    return wait_until


@pytest.fixture
def banner() -> str:
    """Provide a typical VDR greeting banner."""
    return SAMPLE_BANNER
