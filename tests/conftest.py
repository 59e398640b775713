"""
Pytest configuration and fixtures for SuperPancake tests.

No browser is needed: ``FakeBrowser`` hands out ``FakeChannel`` objects that
behave like a websockets client connection (send, ping, close, async
iteration, close_code/close_reason) and answer commands from a script.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from superpancake import (
    CircuitBreakerConfig,
    ConnectionConfig,
    ConnectionManager,
    RetryConfig,
    Session,
    SessionConfig,
    TargetDescriptor,
)

_CLOSED = object()

PAGE_TARGET = TargetDescriptor(
    id="page-1",
    type="page",
    title="Blank",
    url="about:blank",
    webSocketDebuggerUrl="ws://localhost:9222/devtools/page/page-1",
)


def default_reply(message: dict[str, Any]) -> dict[str, Any] | None:
    """Answer every command; Runtime.evaluate of 1+1 evaluates to 2."""
    if message["method"] == "Runtime.evaluate" and message["params"].get("expression") == "1+1":
        return {"id": message["id"], "result": {"result": {"type": "number", "value": 2}}}
    return {"id": message["id"], "result": {"echo": message["method"]}}


class FakeChannel:
    """In-memory stand-in for a websockets client connection."""

    def __init__(
        self,
        reply: Callable[[dict[str, Any]], dict[str, Any] | None] | None = default_reply,
        answer_pings: bool = True,
    ) -> None:
        self.reply = reply
        self.answer_pings = answer_pings
        self.sent: list[dict[str, Any]] = []
        self.pings = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedError(None, None)
        message = json.loads(data)
        self.sent.append(message)
        if self.reply is not None:
            answer = self.reply(message)
            if answer is not None:
                self.push(answer)

    def push(self, message: dict[str, Any]) -> None:
        """Deliver a message from the browser."""
        self._inbox.put_nowait(json.dumps(message))

    def push_raw(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the browser side closing the channel."""
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.drop(code, reason)

    async def ping(self) -> asyncio.Future:
        self.pings += 1
        pong = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            pong.set_result(0.0)
        return pong

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeBrowser:
    """Connector, discoverer and liveness check backed by fake channels."""

    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.reply: Callable[[dict[str, Any]], dict[str, Any] | None] | None = default_reply
        self.answer_pings = True
        self.fail_connects = 0
        self.connect_attempts = 0
        self.discover_calls = 0
        self.alive = True
        self.target = PAGE_TARGET

    @property
    def channel(self) -> FakeChannel:
        return self.channels[-1]

    async def connect(self, url: str, config: ConnectionConfig) -> FakeChannel:
        self.connect_attempts += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise ConnectionRefusedError(111, "Connection refused")
        channel = FakeChannel(reply=self.reply, answer_pings=self.answer_pings)
        self.channels.append(channel)
        return channel

    async def discover(self) -> TargetDescriptor:
        self.discover_calls += 1
        return self.target

    async def is_alive(self) -> bool:
        return self.alive

    def all_sent(self) -> list[dict[str, Any]]:
        return [message for channel in self.channels for message in channel.sent]


class RecordingLogger:
    """Logger that keeps messages instead of printing them."""

    def __init__(self) -> None:
        self.infos: list[str] = []
        self.warnings: list[str] = []
        self.errors: list[str] = []

    def info(self, message: str) -> None:
        self.infos.append(message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)

    def error(self, message: str) -> None:
        self.errors.append(message)


class FakeClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms / 1000


class RecordingSleep:
    """Awaitable sleep that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def wait_until():
    """``await wait_until(lambda: ...)`` polls until the predicate holds."""
    return _wait_until


@pytest.fixture
def connection_config() -> ConnectionConfig:
    """Fast settings: no waiting between attempts, monitors effectively idle."""
    return ConnectionConfig(
        connect_retry_delay_ms=0,
        handshake_timeout_ms=1000,
        heartbeat_interval_ms=60000,
        crash_check_interval_ms=60000,
        reconnect_base_delay_ms=0,
        reconnect_max_delay_ms=0,
    )


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        default_timeout_ms=1000,
        retry=RetryConfig(max_attempts=3, base_delay_ms=0),
        circuit_breaker=CircuitBreakerConfig(failure_threshold=5, recovery_timeout_ms=30000),
    )


@pytest.fixture
def make_connection(browser: FakeBrowser, connection_config: ConnectionConfig, logger):
    """Factory for ConnectionManagers wired to the fake browser."""

    def factory(**overrides: Any) -> ConnectionManager:
        config = connection_config.model_copy(update=overrides)
        return ConnectionManager(
            config,
            connector=browser.connect,
            discoverer=browser.discover,
            liveness_check=browser.is_alive,
            logger=logger,
        )

    return factory


@pytest_asyncio.fixture
async def make_session(make_connection, session_config: SessionConfig, logger):
    """Async factory for open Sessions; every session is closed after the test."""
    sessions: list[Session] = []

    async def factory(
        connection_overrides: dict[str, Any] | None = None,
        config: SessionConfig | None = None,
        **kwargs: Any,
    ) -> Session:
        connection = make_connection(**(connection_overrides or {}))
        await connection.open()
        session = Session(connection, config or session_config, logger=logger, **kwargs)
        sessions.append(session)
        return session

    yield factory

    for session in sessions:
        await session.close()
