"""
Configuration models for SuperPancake.

Every component takes one of these models; every field has a default so
``PancakeConfig()`` is a complete, working configuration for a browser
listening on the standard remote debugging port.

Usage:
    from superpancake import PancakeConfig

    config = PancakeConfig.from_env()
    config.connection.port = 9333
"""

import os

from pydantic import BaseModel, Field

DEFAULT_DEBUG_PORT = 9222


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("true", "1", "yes")


class DiscoveryConfig(BaseModel):
    """Target discovery over the HTTP discovery endpoint."""

    host: str = "localhost"
    endpoint_path: str = "/json"
    target_type: str = "page"
    max_attempts: int = Field(default=30, gt=0)
    attempt_timeout_ms: int = Field(default=3000, gt=0)
    initial_delay_ms: int = Field(default=500, ge=0)
    backoff_multiplier: float = Field(default=1.2, ge=1.0)
    max_delay_ms: int = Field(default=5000, ge=0)
    jitter_ms: int = Field(default=200, ge=0)


class ConnectionConfig(BaseModel):
    """
    Control channel lifecycle: connect, heartbeat, crash detection, reconnect.

    Attributes:
        port: Remote debugging port of the browser
        max_connect_attempts: Discovery+connect rounds performed by open()
        connect_retry_delay_ms: Delay after a failed round, times the round number
        connect_retry_max_delay_ms: Cap on that delay
        handshake_timeout_ms: Bound on the WebSocket opening handshake
        max_message_size: Largest inbound frame accepted (screenshots are big)
        heartbeat_interval_ms: Ping period, also the pong wait per ping
        max_missed_heartbeats: Consecutive misses before the channel is degraded
        heartbeat_stale_after_ms: Age of the last pong that counts as stale
        crash_check_interval_ms: Period of the browser liveness probe
        crash_check_timeout_ms: Timeout of one liveness probe
        max_reconnect_attempts: Reconnection attempts before giving up
        reconnect_base_delay_ms: First reconnection delay, doubled per attempt
        reconnect_max_delay_ms: Cap on the reconnection delay
        reconnect_on_degraded: Reconnect as soon as heartbeats go unanswered
        auto_reconnect: Reconnect after abnormal closes and detected crashes
    """

    port: int = Field(default=DEFAULT_DEBUG_PORT, gt=0, lt=65536)
    max_connect_attempts: int = Field(default=3, gt=0)
    connect_retry_delay_ms: int = Field(default=1000, ge=0)
    connect_retry_max_delay_ms: int = Field(default=3000, ge=0)
    handshake_timeout_ms: int = Field(default=15000, gt=0)
    max_message_size: int = Field(default=100 * 1024 * 1024, gt=0)
    heartbeat_interval_ms: int = Field(default=5000, gt=0)
    max_missed_heartbeats: int = Field(default=3, gt=0)
    heartbeat_stale_after_ms: int = Field(default=20000, gt=0)
    crash_check_interval_ms: int = Field(default=10000, gt=0)
    crash_check_timeout_ms: int = Field(default=3000, gt=0)
    max_reconnect_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay_ms: int = Field(default=1000, ge=0)
    reconnect_max_delay_ms: int = Field(default=16000, ge=0)
    reconnect_on_degraded: bool = True
    auto_reconnect: bool = True
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)


class RetryConfig(BaseModel):
    """Bounded exponential retry of transient failures."""

    max_attempts: int = Field(default=3, gt=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int | None = None


class CircuitBreakerConfig(BaseModel):
    """Failure isolation thresholds."""

    failure_threshold: int = Field(default=5, gt=0)
    recovery_timeout_ms: int = Field(default=30000, ge=0)


class CacheConfig(BaseModel):
    """
    Query cache sizing and freshness.

    ``ttl_ms`` applies to lookups that look dynamic (form controls, counters,
    status messages); ``static_ttl_ms`` to everything else when
    ``adaptive_ttl`` is on. With it off, ``ttl_ms`` applies to every entry.
    """

    capacity: int = Field(default=100, gt=0)
    ttl_ms: int = Field(default=5000, gt=0)
    static_ttl_ms: int = Field(default=30000, gt=0)
    adaptive_ttl: bool = True
    sweep_threshold: float = Field(default=0.8, gt=0, le=1.0)


class SessionConfig(BaseModel):
    """Command issuing policy."""

    default_timeout_ms: int = Field(default=30000, gt=0)
    health_check_timeout_ms: int = Field(default=5000, gt=0)
    breaker_name: str = "session-operations"
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)


class PancakeConfig(BaseModel):
    """Top-level configuration."""

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    verbose: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "PancakeConfig":
        """
        Build a configuration from environment variables.

        Reads SUPER_PANCAKE_PORT, SUPER_PANCAKE_MAX_RECONNECT_ATTEMPTS,
        SUPER_PANCAKE_VERBOSE and SUPER_PANCAKE_DEBUG. Keyword overrides win
        over the environment.

        Returns:
            PancakeConfig instance
        """
        connection: dict = {}
        port = os.getenv("SUPER_PANCAKE_PORT")
        if port:
            connection["port"] = int(port)
        reconnects = os.getenv("SUPER_PANCAKE_MAX_RECONNECT_ATTEMPTS")
        if reconnects:
            connection["max_reconnect_attempts"] = int(reconnects)

        data: dict = {
            "connection": ConnectionConfig(**connection),
            "verbose": _env_flag("SUPER_PANCAKE_VERBOSE") or _env_flag("SUPER_PANCAKE_DEBUG"),
        }
        data.update(overrides)
        return cls(**data)
