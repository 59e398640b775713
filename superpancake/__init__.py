"""
SuperPancake - resilient client runtime for the browser remote debugging protocol
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState

# Configuration
from .config import (
    CacheConfig,
    CircuitBreakerConfig,
    ConnectionConfig,
    DiscoveryConfig,
    PancakeConfig,
    RetryConfig,
    SessionConfig,
)
from .connection import (
    ConnectionEvent,
    ConnectionManager,
    ConnectionState,
    HealthMetrics,
    classify_connect_failure,
)
from .discovery import TargetDescriptor, discover_target, fetch_targets, is_browser_alive
from .errors import (
    ChannelClosedAbnormally,
    ChannelConnectError,
    ChannelError,
    ChannelNotOpenError,
    CircuitOpenError,
    ConnectExhausted,
    ConnectionTerminated,
    DiscoveryExhausted,
    HandshakeTimeout,
    PancakeError,
    ProtocolError,
    QueryError,
    ReconnectExhausted,
    RequestTimeout,
    RetryExhausted,
    SessionError,
    ValidationError,
    is_transient,
)
from .health import HealthMonitor, HealthSnapshot, watch_session
from .logger import ConsoleLogger, PancakeLogger
from .query_cache import QueryCache, cached_query_selector
from .retry import RetryPolicy, retrying, with_retry
from .session import PendingRequest, Session, create_session

# Tracing
from .tracing import JsonlTraceSink, MemoryTraceSink, TraceEvent, Tracer, TraceSink

__version__ = "0.4.0"

__all__ = [
    # Session
    "Session",
    "PendingRequest",
    "create_session",
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "ConnectionEvent",
    "HealthMetrics",
    "classify_connect_failure",
    # Discovery
    "TargetDescriptor",
    "discover_target",
    "fetch_targets",
    "is_browser_alive",
    # Policies
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryPolicy",
    "retrying",
    "with_retry",
    # Cache
    "QueryCache",
    "cached_query_selector",
    # Health
    "HealthMonitor",
    "HealthSnapshot",
    "watch_session",
    # Config
    "PancakeConfig",
    "ConnectionConfig",
    "DiscoveryConfig",
    "SessionConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "CacheConfig",
    # Errors
    "PancakeError",
    "ValidationError",
    "DiscoveryExhausted",
    "ChannelError",
    "ChannelConnectError",
    "HandshakeTimeout",
    "ChannelClosedAbnormally",
    "ChannelNotOpenError",
    "ConnectionTerminated",
    "ConnectExhausted",
    "ReconnectExhausted",
    "SessionError",
    "RequestTimeout",
    "ProtocolError",
    "QueryError",
    "CircuitOpenError",
    "RetryExhausted",
    "is_transient",
    # Logging / tracing
    "PancakeLogger",
    "ConsoleLogger",
    "Tracer",
    "TraceSink",
    "TraceEvent",
    "JsonlTraceSink",
    "MemoryTraceSink",
]
