"""
Protocol session: send a command, get its result.

A Session issues commands over a ConnectionManager's channel and matches
replies to them by id. Replies may arrive in any order; each command has its
own timeout. Every command runs under the session's failure policy:

    circuit breaker( retry( single attempt ) )

so callers see either the result, a fast CircuitOpenError, or one normalized
error after a bounded number of retries.

Usage:
    async with await Session.connect(port=9222) as session:
        await session.send("Page.navigate", {"url": "https://example.com"})
        await session.wait_for_event("Page.loadEventFired", timeout_ms=10000)
        result = await session.send("Runtime.evaluate", {"expression": "document.title"})
"""

import asyncio
import functools
import inspect
import json
import time
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .circuit_breaker import CircuitBreakerRegistry
from .config import PancakeConfig, SessionConfig
from .connection import ConnectionEvent, ConnectionManager, ConnectionState
from .discovery import TargetDescriptor
from .errors import (
    ChannelClosedAbnormally,
    ChannelError,
    ChannelNotOpenError,
    ConnectionTerminated,
    PancakeError,
    ProtocolError,
    RequestTimeout,
    SessionError,
    ValidationError,
    describe_error,
    is_transient,
)
from .logger import ConsoleLogger, PancakeLogger, resolve_logger
from .query_cache import QueryCache
from .retry import with_retry
from .tracing import Tracer

EventCallback = Callable[[dict[str, Any]], Any]


@dataclass
class PendingRequest:
    """A command written to the channel and still waiting for its reply."""

    id: int
    method: str
    params: dict[str, Any]
    timeout_ms: int
    future: asyncio.Future
    issued_at: float = field(default_factory=time.monotonic)


def counts_against_breaker(exc: BaseException) -> bool:
    """An error reply means the browser is reachable, so it is not a breaker failure."""
    return not isinstance(exc, (ProtocolError, ValidationError))


class Session:
    """
    Command client bound to one connection.

    Args:
        connection: An opened ConnectionManager
        config: Session policy (default SessionConfig())
        cache: Query cache to use; a private one is created when omitted
        breakers: Circuit breaker registry; a private one is created when omitted
        logger: Optional logger
        tracer: Optional tracer; records one ``command`` event per attempt
    """

    def __init__(
        self,
        connection: ConnectionManager,
        config: SessionConfig | None = None,
        *,
        cache: QueryCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        logger: PancakeLogger | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self.connection = connection
        self.config = config or SessionConfig()
        self.id = f"session_{uuid.uuid4().hex}"
        self.logger = resolve_logger(logger)
        self.tracer = tracer
        self.cache = cache if cache is not None else QueryCache(self.config.cache, logger=logger)
        if breakers is None:
            breakers = CircuitBreakerRegistry(
                self.config.circuit_breaker,
                is_failure=counts_against_breaker,
                logger=self.logger,
            )
        self.breakers = breakers
        self.created_at = time.time()

        self._pending: dict[int, PendingRequest] = {}
        self._subscribers: dict[str, list[EventCallback]] = defaultdict(list)
        self._background: set[asyncio.Future] = set()
        self._closed = False

        connection.set_message_handler(self._dispatch)
        self._unsubscribe_closed = connection.add_listener(
            ConnectionEvent.CLOSED, self._on_connection_closed
        )

    @classmethod
    async def connect(
        cls,
        port: int | None = None,
        config: PancakeConfig | None = None,
        *,
        target: TargetDescriptor | None = None,
        connector: Callable[..., Awaitable[Any]] | None = None,
        discoverer: Callable[[], Awaitable[TargetDescriptor]] | None = None,
        liveness_check: Callable[[], Awaitable[bool]] | None = None,
        cache: QueryCache | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        logger: PancakeLogger | None = None,
        tracer: Tracer | None = None,
    ) -> "Session":
        """
        Discover a target, open the channel and return a ready session.

        Args:
            port: Remote debugging port (overrides config.connection.port)
            config: Full configuration (default PancakeConfig())
            target: Skip discovery and connect to this target

        Raises:
            ConnectExhausted: The channel could not be opened
        """
        config = config or PancakeConfig()
        connection_config = config.connection
        if port is not None:
            connection_config = connection_config.model_copy(update={"port": port})
        logger = logger or ConsoleLogger(verbose=config.verbose)

        connection = ConnectionManager(
            connection_config,
            connector=connector,
            discoverer=discoverer,
            liveness_check=liveness_check,
            logger=logger,
            tracer=tracer,
        )
        await connection.open(target)
        return cls(
            connection, config.session, cache=cache, breakers=breakers, logger=logger, tracer=tracer
        )

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # --- Commands ------------------------------------------------------

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        *,
        operation: str | None = None,
    ) -> dict[str, Any]:
        """
        Issue a command and wait for its result.

        Args:
            method: Protocol method, e.g. "Page.navigate"
            params: Command parameters
            timeout_ms: Per-attempt reply deadline (default config.default_timeout_ms)
            operation: Circuit breaker name (default config.breaker_name)

        Returns:
            The ``result`` member of the reply ({} when absent)

        Raises:
            CircuitOpenError: The breaker is open; nothing was sent
            RetryExhausted: Every attempt failed transiently
            ProtocolError: The browser answered with an error
            ConnectionTerminated: The connection is closed for good
            ValidationError: Bad method, timeout or non-JSON params; nothing was sent
        """
        if not isinstance(method, str) or not method:
            raise ValidationError(f"Command method must be a non-empty string, got {method!r}")
        if timeout_ms is None:
            timeout_ms = self.config.default_timeout_ms
        if timeout_ms <= 0:
            raise ValidationError(f"timeout_ms must be positive, got {timeout_ms}")
        if params is not None and not isinstance(params, dict):
            raise ValidationError(f"Command params must be a dict, got {type(params).__name__}")
        try:
            json.dumps(params or {})
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Parameters for {method} are not JSON serializable: {e}",
                context={"method": method},
            ) from e

        retry = self.config.retry
        breaker = self.breakers.get(operation or self.config.breaker_name)

        async def attempt() -> dict[str, Any]:
            return await self._send_once(method, params, timeout_ms)

        async def with_policy() -> dict[str, Any]:
            return await with_retry(
                attempt,
                max_attempts=retry.max_attempts,
                base_delay_ms=retry.base_delay_ms,
                max_delay_ms=retry.max_delay_ms,
                operation=method,
                retry_on=is_transient,
                logger=self.logger,
            )

        return await breaker.execute(with_policy)

    async def _send_once(
        self, method: str, params: dict[str, Any] | None, timeout_ms: int
    ) -> dict[str, Any]:
        if self._closed or self.connection.is_terminated:
            terminal = self.connection.terminal_error
            raise ConnectionTerminated(
                f"Cannot send {method}: "
                + (terminal.message if terminal else "session is closed"),
                context={"method": method},
            )
        if self.connection.state != ConnectionState.OPEN:
            raise ChannelNotOpenError.for_method(method, self.connection.state.value)

        request_id = self.connection.next_request_id()
        payload = params or {}
        pending = PendingRequest(
            id=request_id,
            method=method,
            params=payload,
            timeout_ms=timeout_ms,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request_id] = pending
        error: BaseException | None = None

        try:
            await self.connection.send_json({"id": request_id, "method": method, "params": payload})
            return await asyncio.wait_for(pending.future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            error = RequestTimeout(method, request_id, timeout_ms)
            raise error from e
        except (PancakeError, asyncio.CancelledError) as e:
            error = e
            raise
        except Exception as e:
            error = ChannelError(f"Sending {method} failed: {describe_error(e)}")
            raise error from e
        finally:
            self._pending.pop(request_id, None)
            if self.tracer:
                duration_ms = int((time.monotonic() - pending.issued_at) * 1000)
                self.tracer.emit_command(method, request_id, duration_ms, error)

    # --- Inbound -------------------------------------------------------

    def _dispatch(self, message: dict[str, Any]) -> bool:
        """
        Route one inbound message.

        Returns:
            True when the message resolved a pending command
        """
        request_id = message.get("id")
        if request_id is not None:
            pending = self._pending.get(request_id)
            if pending is None or pending.future.done():
                self.logger.info(f"Ignoring reply for unknown request id {request_id}")
                return False
            if "error" in message:
                pending.future.set_exception(
                    ProtocolError.from_reply(pending.method, request_id, message["error"])
                )
            else:
                pending.future.set_result(message.get("result") or {})
            return True

        method = message.get("method")
        if method:
            self._publish(method, message)
        return False

    def subscribe(self, method: str, callback: EventCallback) -> Callable[[], None]:
        """
        Receive unsolicited events (messages without an id).

        Args:
            method: Event name such as "Page.loadEventFired", or "*" for all
            callback: Called with the whole message; may be a coroutine function

        Returns:
            Callable that removes the subscription
        """
        self._subscribers[method].append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(method, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _publish(self, method: str, message: dict[str, Any]) -> None:
        for callback in [*self._subscribers.get(method, []), *self._subscribers.get("*", [])]:
            try:
                result = callback(message)
            except Exception as e:
                self.logger.error(f"Event subscriber for {method} failed: {describe_error(e)}")
                continue
            if inspect.isawaitable(result):
                future = asyncio.ensure_future(result)
                self._background.add(future)
                future.add_done_callback(self._background.discard)

    async def wait_for_event(self, method: str, timeout_ms: int | None = None) -> dict[str, Any]:
        """
        Wait for the next event named ``method`` and return its params.

        Raises:
            SessionError: No such event arrived in time
        """
        timeout_ms = timeout_ms or self.config.default_timeout_ms
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_event(message: dict[str, Any]) -> None:
            if not future.done():
                future.set_result(message.get("params") or {})

        unsubscribe = self.subscribe(method, on_event)
        try:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise SessionError(
                f"Timed out after {timeout_ms}ms waiting for event {method}",
                code="EVENT_TIMEOUT",
                context={"method": method, "timeout_ms": timeout_ms},
            ) from e
        finally:
            unsubscribe()

    def _on_connection_closed(self, event: dict[str, Any]) -> None:
        make_error: Callable[[], PancakeError]
        if event.get("reconnectable", True):
            make_error = functools.partial(
                ChannelClosedAbnormally.from_close, event.get("code"), event.get("reason", "")
            )
        else:
            make_error = functools.partial(
                ConnectionTerminated,
                f"Connection closed ({event.get('reason') or 'normal closure'})",
            )
        failed = self._fail_pending(make_error)
        if failed:
            self.logger.warning(f"Failed {failed} in-flight command(s): {make_error().message}")
        self.cache.invalidate_session(self)

    def _fail_pending(self, make_error: Callable[[], PancakeError]) -> int:
        """Fail every unresolved command, each with its own error instance."""
        failed = 0
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(make_error())
                failed += 1
        return failed

    # --- Health / lifecycle --------------------------------------------

    async def is_healthy(self) -> bool:
        """Round-trip a trivial evaluation; bypasses retry and the breaker."""
        try:
            reply = await self._send_once(
                "Runtime.evaluate",
                {"expression": "1+1", "returnByValue": True},
                self.config.health_check_timeout_ms,
            )
        except PancakeError as e:
            self.logger.info(f"Health check failed: {e.message}")
            return False
        return reply.get("result", {}).get("value") == 2

    def get_stats(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "created_at": self.created_at,
            "closed": self._closed,
            "last_request_id": self.connection.last_request_id,
            "pending_requests": len(self._pending),
            "connection": self.connection.get_stats(),
            "cache": self.cache.get_stats(),
            "circuit_breakers": self.breakers.all_stats(),
        }

    async def close(self) -> None:
        """Fail in-flight commands and close the connection."""
        if self._closed:
            return
        self._closed = True
        self._fail_pending(lambda: ConnectionTerminated("Session closed"))
        self._unsubscribe_closed()
        self.connection.set_message_handler(None)
        self.cache.invalidate_session(self)
        await self.connection.close()
        self.logger.info(f"🔌 Session {self.id} closed")


async def create_session(port: int | None = None, config: PancakeConfig | None = None, **kwargs):
    """Shorthand for ``await Session.connect(port, config, **kwargs)``."""
    return await Session.connect(port, config, **kwargs)
