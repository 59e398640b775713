"""
Error taxonomy for SuperPancake.

Every error carries a stable ``code``, a human readable message and a
``context`` dict with the details a caller needs to act on it. Errors that
wrap a lower-level failure are raised ``from`` that failure so the cause
chain survives.

Transient errors (worth retrying) are the ``ChannelError`` family and
``RequestTimeout``; see ``TRANSIENT_ERRORS``.
"""

import time
from typing import Any


class PancakeError(Exception):
    """Base class for all SuperPancake errors."""

    code = "PANCAKE_ERROR"

    def __init__(
        self, message: str, *, code: str | None = None, context: dict[str, Any] | None = None
    ) -> None:
        if not message:
            message = self.__class__.__name__
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.context = context or {}
        self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for traces and logs."""
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.context:
            result["context"] = self.context
        if self.__cause__ is not None:
            result["cause"] = describe_error(self.__cause__)
        return result


class ValidationError(PancakeError):
    """Invalid argument passed to a public operation."""

    code = "VALIDATION_ERROR"


class DiscoveryExhausted(PancakeError):
    """No usable target was found on the discovery endpoint."""

    code = "DISCOVERY_EXHAUSTED"

    def __init__(self, port: int, attempts: int, last_error: BaseException | None) -> None:
        self.port = port
        self.attempts = attempts
        self.last_error = last_error
        last = describe_error(last_error) if last_error is not None else "none"
        super().__init__(
            f"Browser debugger connection failed after {attempts} attempts. "
            f"Last error: {last}. "
            f"Ensure the browser is running with --remote-debugging-port={port}",
            context={"port": port, "attempts": attempts, "last_error": last},
        )


# --- Channel (transport) errors -------------------------------------------


class ChannelError(PancakeError):
    """Transient failure of the control channel transport."""

    code = "CHANNEL_ERROR"


class ChannelConnectError(ChannelError):
    """The channel could not be opened (refused, reset, host not found)."""

    code = "CHANNEL_CONNECT_FAILED"


class HandshakeTimeout(ChannelError):
    """The WebSocket opening handshake did not finish in time."""

    code = "HANDSHAKE_TIMEOUT"

    @classmethod
    def from_timeout(cls, url: str, port: int, timeout_ms: int) -> "HandshakeTimeout":
        return cls(
            f"Connection to browser timed out after {timeout_ms}ms. "
            f"The browser on port {port} may be unresponsive or overloaded.",
            context={"url": url, "port": port, "timeout_ms": timeout_ms},
        )


class ChannelClosedAbnormally(ChannelError):
    """The channel closed with a non-normal close code."""

    code = "CHANNEL_CLOSED"

    def __init__(self, message: str, *, close_code: int | None = None, reason: str = "") -> None:
        self.close_code = close_code
        self.reason = reason
        super().__init__(message, context={"close_code": close_code, "reason": reason})

    @classmethod
    def from_close(cls, close_code: int | None, reason: str = "") -> "ChannelClosedAbnormally":
        return cls(
            f"Control channel closed ({describe_close_code(close_code)})",
            close_code=close_code,
            reason=reason,
        )


class ChannelNotOpenError(ChannelError):
    """A command was issued while the channel is not open."""

    code = "CHANNEL_NOT_OPEN"

    @classmethod
    def for_method(cls, method: str, state: str) -> "ChannelNotOpenError":
        return cls(
            f"Cannot send {method}: connection is {state}",
            context={"method": method, "state": state},
        )


# --- Terminal connection errors -------------------------------------------


class ConnectionTerminated(PancakeError):
    """The connection is closed for good; commands can no longer be issued."""

    code = "CONNECTION_TERMINATED"


class ConnectExhausted(ConnectionTerminated):
    """open() ran out of connect attempts."""

    code = "CONNECT_EXHAUSTED"

    def __init__(self, port: int, attempts: int, last_error: BaseException | None) -> None:
        self.port = port
        self.attempts = attempts
        self.last_error = last_error
        last = describe_error(last_error) if last_error is not None else "none"
        super().__init__(
            f"Failed to connect to browser on port {port} after {attempts} attempts: {last}",
            context={"port": port, "attempts": attempts, "last_error": last},
        )


class ReconnectExhausted(ConnectionTerminated):
    """Automatic reconnection gave up."""

    code = "RECONNECT_EXHAUSTED"

    def __init__(self, port: int, attempts: int, last_error: BaseException | None) -> None:
        self.port = port
        self.attempts = attempts
        self.last_error = last_error
        last = describe_error(last_error) if last_error is not None else "none"
        super().__init__(
            f"Reconnection to port {port} failed after {attempts} attempts: {last}",
            context={"port": port, "attempts": attempts, "last_error": last},
        )


# --- Session errors --------------------------------------------------------


class SessionError(PancakeError):
    """Failure scoped to a single command."""

    code = "SESSION_ERROR"


class RequestTimeout(SessionError):
    """No reply arrived for a command before its deadline."""

    code = "REQUEST_TIMEOUT"

    def __init__(self, method: str, request_id: int, timeout_ms: int) -> None:
        self.method = method
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Command {method} (id {request_id}) timed out after {timeout_ms}ms",
            context={"method": method, "request_id": request_id, "timeout_ms": timeout_ms},
        )


class ProtocolError(SessionError):
    """The browser answered a command with an error reply."""

    code = "PROTOCOL_ERROR"

    def __init__(
        self,
        method: str,
        request_id: int,
        remote_message: str,
        remote_code: int | None = None,
        data: Any = None,
    ) -> None:
        self.method = method
        self.request_id = request_id
        self.remote_message = remote_message
        self.remote_code = remote_code
        self.data = data
        super().__init__(
            f"Command {method} failed: {remote_message or 'unknown error'}",
            context={
                "method": method,
                "request_id": request_id,
                "remote_code": remote_code,
                "data": data,
            },
        )

    @classmethod
    def from_reply(cls, method: str, request_id: int, error: Any) -> "ProtocolError":
        """Build from the ``error`` member of a reply envelope."""
        if isinstance(error, dict):
            return cls(
                method,
                request_id,
                str(error.get("message", "")),
                error.get("code"),
                error.get("data"),
            )
        return cls(method, request_id, str(error))


class QueryError(PancakeError):
    """A DOM lookup failed."""

    code = "QUERY_FAILED"

    def __init__(self, selector: str, message: str) -> None:
        self.selector = selector
        super().__init__(f"Query '{selector}' failed: {message}", context={"selector": selector})


# --- Policy errors ---------------------------------------------------------


class CircuitOpenError(PancakeError):
    """The circuit breaker is rejecting calls."""

    code = "CIRCUIT_OPEN"

    def __init__(self, name: str, failure_count: int, retry_after_ms: int) -> None:
        self.name = name
        self.failure_count = failure_count
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Circuit breaker '{name}' is open after {failure_count} failures; "
            f"retry in {retry_after_ms}ms",
            context={
                "name": name,
                "failure_count": failure_count,
                "retry_after_ms": retry_after_ms,
            },
        )


class RetryExhausted(PancakeError):
    """All retry attempts failed."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {describe_error(last_error)}",
            context={
                "operation": operation,
                "attempts": attempts,
                "last_error": describe_error(last_error),
            },
        )


CLOSE_CODE_DESCRIPTIONS = {
    1000: "normal closure",
    1001: "going away",
    1006: "abnormal closure, the browser may have crashed or been closed",
    1011: "browser internal error",
    1012: "browser is restarting",
    1013: "browser is overloaded, try again later",
}


def describe_close_code(close_code: int | None) -> str:
    """Readable description of a WebSocket close code."""
    if close_code is None:
        return "no close code"
    description = CLOSE_CODE_DESCRIPTIONS.get(close_code, "unexpected close")
    return f"code {close_code}, {description}"


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (ChannelError, RequestTimeout)


def is_transient(exc: BaseException) -> bool:
    """True when retrying ``exc`` may succeed."""
    return isinstance(exc, TRANSIENT_ERRORS)


def describe_error(exc: BaseException | None) -> str:
    """One-line description that is never empty."""
    if exc is None:
        return "unknown error"
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
