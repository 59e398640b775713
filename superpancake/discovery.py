"""
Target discovery over the browser's HTTP discovery endpoint.

The browser lists its debuggable targets at ``http://<host>:<port>/json``.
Discovery polls that endpoint with jittered exponential backoff until a page
target with a WebSocket address shows up, which covers the window between
launching the browser and its debugger becoming reachable.

The HTTP calls use ``requests`` and run in a worker thread so the event loop
keeps servicing heartbeats and replies while discovery waits.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .config import DiscoveryConfig
from .errors import DiscoveryExhausted, describe_error
from .logger import PancakeLogger


class TargetDescriptor(BaseModel):
    """One entry of the discovery endpoint listing."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    type: str
    title: str = ""
    url: str = ""
    web_socket_debugger_url: str | None = Field(default=None, alias="webSocketDebuggerUrl")


class DiscoveryResponseError(Exception):
    """The discovery endpoint answered, but not with a usable listing."""


def discovery_url(port: int, host: str = "localhost", endpoint_path: str = "/json") -> str:
    return f"http://{host}:{port}{endpoint_path}"


def select_target(
    targets: list[TargetDescriptor], target_type: str = "page"
) -> TargetDescriptor | None:
    """First target of ``target_type`` that exposes a channel address."""
    for target in targets:
        if target.type == target_type and target.web_socket_debugger_url:
            return target
    return None


def _parse_listing(payload: Any) -> list[TargetDescriptor]:
    if not isinstance(payload, list):
        raise DiscoveryResponseError(
            f"expected a JSON array of targets, got {type(payload).__name__}"
        )
    targets = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        try:
            targets.append(TargetDescriptor.model_validate(entry))
        except PydanticValidationError:
            continue
    return targets


async def fetch_targets(
    port: int, *, config: DiscoveryConfig | None = None
) -> list[TargetDescriptor]:
    """
    Fetch the target listing once.

    Raises:
        requests.RequestException: On transport failure or non-2xx status
        DiscoveryResponseError: When the body is not a JSON array
    """
    config = config or DiscoveryConfig()
    url = discovery_url(port, config.host, config.endpoint_path)
    response = await asyncio.to_thread(
        requests.get, url, timeout=config.attempt_timeout_ms / 1000
    )
    response.raise_for_status()
    try:
        payload = response.json()
    except ValueError as e:
        raise DiscoveryResponseError(f"invalid JSON from {url}: {e}") from e
    return _parse_listing(payload)


def _describe_attempt_failure(error: BaseException, port: int) -> str:
    if isinstance(error, requests.Timeout):
        return f"discovery request to port {port} timed out"
    if isinstance(error, requests.ConnectionError):
        return f"connection to port {port} refused, browser not reachable yet"
    return describe_error(error)


async def discover_target(
    port: int,
    max_attempts: int | None = None,
    *,
    config: DiscoveryConfig | None = None,
    logger: PancakeLogger | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> TargetDescriptor:
    """
    Poll the discovery endpoint until a usable target appears.

    Args:
        port: Remote debugging port
        max_attempts: Attempt budget (default: config.max_attempts)
        config: Discovery settings
        logger: Optional logger
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        The first page target carrying a WebSocket address

    Raises:
        DiscoveryExhausted: When the budget is spent without a usable target
    """
    config = config or DiscoveryConfig()
    attempts = max_attempts if max_attempts is not None else config.max_attempts
    delay_ms = float(config.initial_delay_ms)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            targets = await fetch_targets(port, config=config)
            target = select_target(targets, config.target_type)
            if target is not None:
                if logger:
                    logger.info(f"🔍 Found {target.type} target '{target.title}' on port {port}")
                return target
            if targets:
                last_error = DiscoveryResponseError(
                    f"no {config.target_type} target with a debugger URL "
                    f"among {len(targets)} targets"
                )
            else:
                last_error = DiscoveryResponseError("no targets listed")
        except (requests.RequestException, DiscoveryResponseError) as e:
            last_error = e

        if logger:
            logger.info(
                f"🔍 Discovery attempt {attempt}/{attempts} failed: "
                f"{_describe_attempt_failure(last_error, port)}"
            )
        if attempt == attempts:
            break

        jitter_ms = random.uniform(0, config.jitter_ms)
        wait_ms = min(delay_ms + jitter_ms, config.max_delay_ms)
        await sleep(wait_ms / 1000)
        delay_ms = min(delay_ms * config.backoff_multiplier, config.max_delay_ms)

    raise DiscoveryExhausted(port, attempts, last_error) from last_error


async def is_browser_alive(
    port: int,
    *,
    host: str = "localhost",
    endpoint_path: str = "/json",
    timeout_ms: int = 3000,
) -> bool:
    """Liveness probe for crash detection; any failure means not alive."""
    url = discovery_url(port, host, endpoint_path)
    try:
        response = await asyncio.to_thread(requests.get, url, timeout=timeout_ms / 1000)
    except requests.RequestException:
        return False
    return response.ok
