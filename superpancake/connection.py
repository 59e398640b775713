"""
Connection manager for the browser control channel.

Owns the single WebSocket to the browser and keeps it usable:

- open(): discovery + handshake, retried a few times
- heartbeat: native WebSocket pings; unanswered pings degrade the channel
- crash detection: periodic probe of the discovery endpoint
- reconnection: one background task with exponential backoff, bounded
  attempts, fresh discovery on every attempt

Inbound frames are decoded and handed to a single message handler (the
Session). Lifecycle changes are published as events:

    manager = ConnectionManager(ConnectionConfig(port=9222))
    manager.add_listener(ConnectionEvent.RECONNECTED, lambda e: print(e))
    await manager.open()
"""

import asyncio
import inspect
import itertools
import json
import socket
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .config import ConnectionConfig
from .discovery import TargetDescriptor, discover_target, discovery_url, is_browser_alive
from .errors import (
    ChannelClosedAbnormally,
    ChannelConnectError,
    ChannelNotOpenError,
    ConnectExhausted,
    ConnectionTerminated,
    HandshakeTimeout,
    PancakeError,
    ReconnectExhausted,
    ValidationError,
    describe_close_code,
    describe_error,
)
from .logger import PancakeLogger, resolve_logger
from .tracing import Tracer

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

MessageHandler = Callable[[dict[str, Any]], Any]
Listener = Callable[[dict[str, Any]], Any]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ConnectionEvent(str, Enum):
    CLOSED = "connection-closed"
    RECONNECTED = "connection-reconnected"
    EXHAUSTED = "connection-exhausted"
    UNHEALTHY = "connection-unhealthy"
    CRASHED = "browser-crashed"


@dataclass
class HealthMetrics:
    """Heartbeat bookkeeping. Times are ``time.monotonic()`` seconds."""

    last_heartbeat_sent: float | None = None
    last_heartbeat_ack: float | None = None
    consecutive_failures: int = 0

    def ack_age_ms(self, now: float | None = None) -> int | None:
        if self.last_heartbeat_ack is None:
            return None
        now = time.monotonic() if now is None else now
        return int((now - self.last_heartbeat_ack) * 1000)


async def websocket_connector(url: str, config: ConnectionConfig):
    """Open the control channel with the websockets client."""
    return await connect(
        url,
        ping_interval=None,
        open_timeout=None,
        max_size=config.max_message_size,
        compression=None,
    )


def _close_details(exc: ConnectionClosed) -> tuple[int | None, str]:
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is None:
        return None, ""
    return rcvd.code, rcvd.reason


def classify_connect_failure(exc: BaseException, url: str, port: int) -> PancakeError:
    """Turn a raw connect failure into an actionable channel error."""
    if isinstance(exc, PancakeError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ChannelConnectError(
            f"Connection to browser on port {port} timed out. "
            "The browser may be overloaded or unresponsive.",
            context={"url": url, "port": port},
        )
    if isinstance(exc, ConnectionRefusedError):
        return ChannelConnectError(
            f"Browser refused connection on port {port}. "
            f"Ensure the browser is running with --remote-debugging-port={port}",
            context={"url": url, "port": port},
        )
    if isinstance(exc, ConnectionResetError):
        return ChannelConnectError(
            f"Connection reset by browser on port {port}. The browser may have crashed.",
            context={"url": url, "port": port},
        )
    if isinstance(exc, socket.gaierror):
        return ChannelConnectError(
            f"Browser host not found for {url}. Check the discovery host setting.",
            context={"url": url, "port": port},
        )
    if isinstance(exc, ConnectionClosed):
        code, reason = _close_details(exc)
        return ChannelClosedAbnormally.from_close(code, reason)
    if isinstance(exc, (InvalidHandshake, InvalidURI)):
        return ChannelConnectError(
            f"WebSocket handshake with {url} failed: {describe_error(exc)}",
            context={"url": url, "port": port},
        )
    return ChannelConnectError(
        f"Failed to connect to browser on port {port}: {describe_error(exc)}",
        context={"url": url, "port": port},
    )


class ConnectionManager:
    """
    Lifecycle owner of the control channel.

    Args:
        config: Connection settings (default ConnectionConfig())
        connector: ``async (url, config) -> channel``. The channel must
            support ``send``, ``ping``, ``close``, async iteration and expose
            ``close_code``/``close_reason``. Default: websockets client.
        discoverer: ``async () -> TargetDescriptor``. Default: discovery on
            the configured port.
        liveness_check: ``async () -> bool`` used by crash detection.
            Default: probe of the discovery endpoint.
        logger: Optional logger
        tracer: Optional tracer for state changes and lifecycle events
    """

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        *,
        connector: Callable[[str, ConnectionConfig], Awaitable[Any]] | None = None,
        discoverer: Callable[[], Awaitable[TargetDescriptor]] | None = None,
        liveness_check: Callable[[], Awaitable[bool]] | None = None,
        logger: PancakeLogger | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.config = config or ConnectionConfig()
        self.port = self.config.port
        self.logger = resolve_logger(logger)
        self.tracer = tracer
        self._connector = connector or websocket_connector
        self._discoverer = discoverer or self._discover
        self._liveness_check = liveness_check or self._probe_liveness

        self.state = ConnectionState.CLOSED
        self.target: TargetDescriptor | None = None
        self.health = HealthMetrics()
        self.reconnect_attempts = 0
        self.crash_count = 0
        self.total_reconnects = 0
        self.terminal_error: ConnectionTerminated | None = None

        self._channel: Any = None
        self._terminated = False
        self._request_ids = itertools.count(1)
        self._last_request_id = 0
        self._message_handler: MessageHandler | None = None
        self._listeners: dict[ConnectionEvent, list[Listener]] = {e: [] for e in ConnectionEvent}

        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._crash_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._background: set[asyncio.Future] = set()

    # --- Queries -------------------------------------------------------

    @property
    def discovery_url(self) -> str:
        discovery = self.config.discovery
        return discovery_url(self.port, discovery.host, discovery.endpoint_path)

    @property
    def max_reconnect_attempts(self) -> int:
        return self.config.max_reconnect_attempts

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self._channel is not None

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def last_request_id(self) -> int:
        return self._last_request_id

    def is_healthy(self) -> bool:
        """Open, heartbeats answered, last pong not stale."""
        if not self.is_open:
            return False
        if self.health.consecutive_failures >= self.config.max_missed_heartbeats:
            return False
        age_ms = self.health.ack_age_ms()
        return age_ms is None or age_ms <= self.config.heartbeat_stale_after_ms

    def next_request_id(self) -> int:
        """Allocate the next command id; unique for this manager's lifetime."""
        self._last_request_id = next(self._request_ids)
        return self._last_request_id

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "port": self.port,
            "target_id": self.target.id if self.target else None,
            "healthy": self.is_healthy(),
            "consecutive_failures": self.health.consecutive_failures,
            "last_heartbeat_ack_age_ms": self.health.ack_age_ms(),
            "reconnect_attempts": self.reconnect_attempts,
            "is_reconnecting": self.is_reconnecting,
            "total_reconnects": self.total_reconnects,
            "crash_count": self.crash_count,
            "last_request_id": self._last_request_id,
        }

    # --- Subscriptions -------------------------------------------------

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    def add_listener(self, event: ConnectionEvent | str, callback: Listener) -> Callable[[], None]:
        """
        Subscribe to a lifecycle event.

        Returns:
            Callable that removes the subscription
        """
        event = ConnectionEvent(event)
        self._listeners[event].append(callback)
        return lambda: self.remove_listener(event, callback)

    def remove_listener(self, event: ConnectionEvent | str, callback: Listener) -> None:
        listeners = self._listeners[ConnectionEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: ConnectionEvent, data: dict[str, Any] | None = None) -> None:
        payload = {"event": event.value, "port": self.port, **(data or {})}
        if self.tracer:
            self.tracer.emit_lifecycle(event.value, data)
        for callback in list(self._listeners[event]):
            try:
                result = callback(payload)
            except Exception as e:
                self.logger.error(f"Listener for {event.value} failed: {describe_error(e)}")
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _track(self, future: asyncio.Future) -> None:
        self._background.add(future)
        future.add_done_callback(self._on_background_done)

    def _on_background_done(self, future: asyncio.Future) -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            self.logger.error(f"Background callback failed: {describe_error(future.exception())}")

    def _set_state(self, state: ConnectionState, reason: str | None = None) -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        suffix = f" ({reason})" if reason else ""
        self.logger.info(f"🔌 Connection {previous.value} -> {state.value}{suffix}")
        if self.tracer:
            self.tracer.emit_state_change(previous.value, state.value, reason)

    # --- Open / close --------------------------------------------------

    async def open(self, target: TargetDescriptor | None = None):
        """
        Discover a target (unless given) and open the channel.

        Raises:
            ConnectionTerminated: The manager was closed before
            ConnectExhausted: Every connect round failed
        """
        if self._terminated:
            raise self.terminal_error or ConnectionTerminated(
                "Connection manager is closed and cannot be reopened"
            )
        if self._channel is not None:
            return self._channel
        if self.is_reconnecting:
            raise ChannelNotOpenError(
                "Reconnection in progress", context={"state": self.state.value}
            )

        self._set_state(ConnectionState.CONNECTING)
        attempts = self.config.max_connect_attempts
        last_error: BaseException | None = None

        for attempt in range(1, attempts + 1):
            try:
                descriptor = target or await self._discoverer()
                await self._attach(descriptor)
            except Exception as e:
                last_error = e
                self.logger.warning(
                    f"Connect attempt {attempt}/{attempts} to port {self.port} failed: "
                    f"{describe_error(e)}"
                )
                if attempt < attempts:
                    delay_ms = min(
                        self.config.connect_retry_delay_ms * attempt,
                        self.config.connect_retry_max_delay_ms,
                    )
                    await asyncio.sleep(delay_ms / 1000)
                continue
            self.logger.info(f"✅ Connected to browser on port {self.port}")
            return self._channel

        error = ConnectExhausted(self.port, attempts, last_error)
        self.logger.error(error.message)
        self._terminate(error)
        self._emit(
            ConnectionEvent.EXHAUSTED,
            {"attempts": attempts, "last_error": describe_error(last_error)},
        )
        raise error from last_error

    async def _attach(self, target: TargetDescriptor) -> None:
        url = target.web_socket_debugger_url
        if not url:
            raise ChannelConnectError(
                f"Target {target.id or target.title!r} has no WebSocket debugger URL",
                context={"port": self.port},
            )
        timeout_ms = self.config.handshake_timeout_ms
        try:
            channel = await asyncio.wait_for(
                self._connector(url, self.config), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout.from_timeout(url, self.port, timeout_ms) from e
        except PancakeError:
            raise
        except Exception as e:
            raise classify_connect_failure(e, url, self.port) from e

        if self._terminated:
            await self._close_channel(channel)
            raise self.terminal_error or ConnectionTerminated("Connection manager was closed")

        self._channel = channel
        self.target = target
        self.health = HealthMetrics(last_heartbeat_ack=time.monotonic())
        self._set_state(ConnectionState.OPEN)
        self._reader_task = asyncio.create_task(self._read_loop(channel))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(channel))
        self._crash_task = asyncio.create_task(self._crash_loop(channel))

    async def close(self) -> None:
        """Explicit shutdown. Does not reconnect; the manager cannot be reopened."""
        already_terminated = self._terminated
        self._terminated = True
        if self.terminal_error is None:
            self.terminal_error = ConnectionTerminated("Connection closed by client")

        tasks = self._stop_monitors()
        reconnect = self._reconnect_task
        if self.is_reconnecting and reconnect is not asyncio.current_task():
            reconnect.cancel()
            tasks.append(reconnect)

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_channel(channel)
        self._set_state(ConnectionState.CLOSED, "closed by client")
        if not already_terminated:
            self._emit(
                ConnectionEvent.CLOSED,
                {"code": NORMAL_CLOSURE, "reason": "closed by client", "reconnectable": False},
            )
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _close_channel(self, channel: Any) -> None:
        try:
            await channel.close()
        except (ConnectionClosed, OSError) as e:
            self.logger.info(f"Channel already gone while closing: {describe_error(e)}")

    def _stop_monitors(self) -> list[asyncio.Task]:
        current = asyncio.current_task()
        stopped = []
        for task in (self._reader_task, self._heartbeat_task, self._crash_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()
                stopped.append(task)
        self._reader_task = self._heartbeat_task = self._crash_task = None
        return stopped

    def _terminate(self, error: ConnectionTerminated) -> None:
        self._terminated = True
        self.terminal_error = error
        self._stop_monitors()
        self._channel = None
        self._set_state(ConnectionState.CLOSED, error.message)

    # --- Outbound ------------------------------------------------------

    async def send_json(self, message: dict[str, Any]) -> None:
        """
        Write one JSON envelope to the channel.

        Raises:
            ChannelNotOpenError: No channel attached
            ValidationError: The envelope is not JSON serializable
            ChannelClosedAbnormally: The channel closed under the write
        """
        channel = self._channel
        if channel is None:
            raise ChannelNotOpenError(
                f"No open channel (connection is {self.state.value})",
                context={"state": self.state.value},
            )
        try:
            frame = json.dumps(message)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Message is not JSON serializable: {e}") from e
        try:
            await channel.send(frame)
        except ConnectionClosed as e:
            code, reason = _close_details(e)
            raise ChannelClosedAbnormally.from_close(code, reason) from e

    # --- Inbound -------------------------------------------------------

    async def _read_loop(self, channel: Any) -> None:
        try:
            async for raw in channel:
                try:
                    message = json.loads(raw)
                except ValueError:
                    self.logger.warning(f"Dropping malformed frame: {str(raw)[:120]!r}")
                    continue
                if not isinstance(message, dict) or self._message_handler is None:
                    continue
                try:
                    self._message_handler(message)
                except Exception as e:
                    self.logger.error(f"Message handler failed: {describe_error(e)}")
        except ConnectionClosed:
            pass
        except OSError as e:
            self.logger.warning(f"Channel read failed: {describe_error(e)}")
        self._on_channel_closed(channel)

    def _on_channel_closed(self, channel: Any) -> None:
        if channel is not self._channel or self._terminated:
            return
        code = getattr(channel, "close_code", None)
        if code is None:
            code = ABNORMAL_CLOSURE
        reason = getattr(channel, "close_reason", None) or ""

        self._channel = None
        self._stop_monitors()
        reconnectable = code != NORMAL_CLOSURE
        self._emit(
            ConnectionEvent.CLOSED,
            {"code": code, "reason": reason, "reconnectable": reconnectable},
        )

        if not reconnectable:
            self.logger.info("🔌 Browser closed the control channel normally")
            self._terminate(ConnectionTerminated("Browser closed the control channel"))
        elif self.config.auto_reconnect:
            self.logger.warning(f"Control channel lost ({describe_close_code(code)})")
            self._schedule_reconnect(describe_close_code(code))
        else:
            self._terminate(
                ConnectionTerminated(
                    f"Control channel lost ({describe_close_code(code)}), reconnection disabled"
                )
            )

    def _drop_channel(self, reason: str) -> None:
        """Detach the current channel ourselves and announce it as lost."""
        channel, self._channel = self._channel, None
        self._stop_monitors()
        self._emit(
            ConnectionEvent.CLOSED,
            {"code": ABNORMAL_CLOSURE, "reason": reason, "reconnectable": True},
        )
        if channel is not None:
            self._track(asyncio.ensure_future(self._close_channel(channel)))

    # --- Heartbeat -----------------------------------------------------

    async def _heartbeat_loop(self, channel: Any) -> None:
        interval = self.config.heartbeat_interval_ms / 1000
        delay = interval
        while channel is self._channel:
            await asyncio.sleep(delay)
            if channel is not self._channel:
                return
            sent_at = time.monotonic()
            self.health.last_heartbeat_sent = sent_at
            try:
                pong_waiter = await channel.ping()
                await asyncio.wait_for(pong_waiter, timeout=interval)
            except asyncio.TimeoutError:
                self._on_heartbeat_missed(channel)
            except (ConnectionClosed, OSError):
                # Closure is handled by the read loop
                return
            else:
                self._on_heartbeat_ack()
            # Pong wait counts toward the interval
            delay = max(0.0, interval - (time.monotonic() - sent_at))

    def _on_heartbeat_ack(self) -> None:
        self.health.consecutive_failures = 0
        self.health.last_heartbeat_ack = time.monotonic()
        if self.state == ConnectionState.DEGRADED:
            self.logger.info("💓 Heartbeat answered again, connection recovered")
            self._set_state(ConnectionState.OPEN, "heartbeat recovered")

    def _on_heartbeat_missed(self, channel: Any) -> None:
        self.health.consecutive_failures += 1
        failures = self.health.consecutive_failures
        age_ms = self.health.ack_age_ms()
        stale = age_ms is not None and age_ms > self.config.heartbeat_stale_after_ms
        if failures < self.config.max_missed_heartbeats and not stale:
            return
        if self.state != ConnectionState.OPEN:
            return

        if stale:
            reason = (
                f"last pong {age_ms}ms ago exceeds {self.config.heartbeat_stale_after_ms}ms, "
                f"{failures} heartbeats unanswered"
            )
        else:
            reason = f"{failures} heartbeats unanswered, last pong {age_ms}ms ago"
        self.logger.warning(f"💔 Connection unhealthy: {reason}")
        self._set_state(ConnectionState.DEGRADED, reason)
        self._emit(
            ConnectionEvent.UNHEALTHY,
            {"consecutive_failures": failures, "last_ack_age_ms": age_ms, "reason": reason},
        )
        if self.config.reconnect_on_degraded and self.config.auto_reconnect:
            self._drop_channel(reason)
            self._schedule_reconnect(reason)

    # --- Crash detection -----------------------------------------------

    async def _probe_liveness(self) -> bool:
        discovery = self.config.discovery
        return await is_browser_alive(
            self.port,
            host=discovery.host,
            endpoint_path=discovery.endpoint_path,
            timeout_ms=self.config.crash_check_timeout_ms,
        )

    async def _crash_loop(self, channel: Any) -> None:
        interval = self.config.crash_check_interval_ms / 1000
        while channel is self._channel:
            await asyncio.sleep(interval)
            if channel is not self._channel:
                return
            try:
                alive = await self._liveness_check()
            except Exception as e:
                self.logger.warning(f"Liveness check failed: {describe_error(e)}")
                alive = False
            if channel is not self._channel:
                return
            if alive:
                continue

            self.crash_count += 1
            self.logger.error(f"💥 Browser on port {self.port} stopped responding")
            self._emit(ConnectionEvent.CRASHED, {"crash_count": self.crash_count})
            self._drop_channel("browser crashed")
            if self.config.auto_reconnect:
                self._schedule_reconnect("browser crashed")
            else:
                self._terminate(ConnectionTerminated("Browser crashed, reconnection disabled"))
            return

    # --- Reconnection --------------------------------------------------

    async def _discover(self) -> TargetDescriptor:
        return await discover_target(self.port, config=self.config.discovery, logger=self.logger)

    def _schedule_reconnect(self, reason: str) -> None:
        if self._terminated or self.is_reconnecting:
            return
        self._set_state(ConnectionState.RECONNECTING, reason)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    def reconnect_delay_ms(self, attempt: int) -> int:
        """Backoff before reconnection attempt ``attempt`` (1-based)."""
        delay = self.config.reconnect_base_delay_ms * (2 ** (attempt - 1))
        return min(delay, self.config.reconnect_max_delay_ms)

    async def _reconnect_loop(self) -> None:
        max_attempts = self.config.max_reconnect_attempts
        last_error: BaseException | None = None

        while self.reconnect_attempts < max_attempts:
            self.reconnect_attempts += 1
            attempt = self.reconnect_attempts
            delay_ms = self.reconnect_delay_ms(attempt)
            self.logger.warning(
                f"🔄 Reconnecting to port {self.port} in {delay_ms}ms "
                f"(attempt {attempt}/{max_attempts})"
            )
            await asyncio.sleep(delay_ms / 1000)
            if self._terminated:
                return
            try:
                target = await self._discoverer()
                await self._attach(target)
            except ConnectionTerminated:
                return
            except Exception as e:
                last_error = e
                self.logger.warning(f"Reconnection attempt {attempt} failed: {describe_error(e)}")
                continue

            self.total_reconnects += 1
            self.reconnect_attempts = 0
            self.logger.info(f"✅ Reconnected to browser after {attempt} attempt(s)")
            self._emit(ConnectionEvent.RECONNECTED, {"attempts": attempt})
            return

        error = ReconnectExhausted(self.port, max_attempts, last_error)
        if last_error is not None:
            error.__cause__ = last_error
        self.logger.error(error.message)
        self._terminate(error)
        self._emit(
            ConnectionEvent.EXHAUSTED,
            {"attempts": max_attempts, "last_error": describe_error(last_error)},
        )
