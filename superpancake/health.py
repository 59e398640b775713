"""
Health monitoring with alerting.

Runs named checks (sync or async callables returning a bool or a dict with a
``healthy`` key) on demand or periodically, keeps a bounded history of
snapshots, and calls alert callbacks when a critical check fails.

Usage:
    monitor = HealthMonitor(breakers=session.breakers)
    watch_session(monitor, session)
    monitor.on_alert(lambda level, snapshot: print(level, snapshot.critical_issues))
    monitor.start(interval_ms=30000)
    ...
    await monitor.stop()
"""

import asyncio
import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .circuit_breaker import CircuitBreakerRegistry, CircuitState
from .errors import ValidationError, describe_error
from .logger import PancakeLogger, resolve_logger

AlertCallback = Callable[[str, "HealthSnapshot"], Any]


def _iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass
class CheckResult:
    healthy: bool
    duration_ms: int
    timestamp: str
    data: Any = None
    error: str | None = None


@dataclass
class HealthCheck:
    name: str
    check: Callable[[], Any]
    timeout_ms: int = 5000
    critical: bool = False
    description: str = ""
    last_result: CheckResult | None = None
    consecutive_failures: int = 0


@dataclass
class HealthSnapshot:
    timestamp: str
    results: dict[str, CheckResult]
    overall_healthy: bool
    critical_issues: list[dict[str, Any]] = field(default_factory=list)
    circuit_breakers: dict[str, Any] = field(default_factory=dict)


class HealthMonitor:
    """
    Registry and scheduler of health checks.

    Args:
        breakers: Circuit breaker registry summarized in every snapshot
        max_history: Snapshots kept for get_history()/get_metrics()
        logger: Optional logger
    """

    def __init__(
        self,
        *,
        breakers: CircuitBreakerRegistry | None = None,
        max_history: int = 100,
        logger: PancakeLogger | None = None,
    ) -> None:
        self.breakers = breakers
        self.max_history = max_history
        self.logger = resolve_logger(logger)
        self.checks: dict[str, HealthCheck] = {}
        self.history: list[HealthSnapshot] = []
        self._alert_callbacks: list[AlertCallback] = []
        self._task: asyncio.Task | None = None

    def add_check(
        self,
        name: str,
        check: Callable[[], Any],
        *,
        timeout_ms: int = 5000,
        critical: bool = False,
        description: str | None = None,
    ) -> None:
        if not name:
            raise ValidationError("Health check name must not be empty")
        self.checks[name] = HealthCheck(
            name=name,
            check=check,
            timeout_ms=timeout_ms,
            critical=critical,
            description=description or f"Health check for {name}",
        )
        self.logger.info(f"📋 Health check '{name}' registered (critical: {critical})")

    def remove_check(self, name: str) -> None:
        self.checks.pop(name, None)

    def on_alert(self, callback: AlertCallback) -> None:
        self._alert_callbacks.append(callback)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_ms: int = 30000) -> None:
        """Run all checks now and then every ``interval_ms``."""
        if self.is_running:
            self.logger.warning("Health monitor already running")
            return
        self.logger.info(f"🚀 Starting health monitor (interval: {interval_ms}ms)")
        self._task = asyncio.create_task(self._run_periodically(interval_ms / 1000))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("🛑 Health monitor stopped")

    async def _run_periodically(self, interval: float) -> None:
        while True:
            await self.run_all_checks()
            await asyncio.sleep(interval)

    async def _run_single_check(self, check: HealthCheck) -> CheckResult:
        started = time.monotonic()
        try:
            outcome = check.check()
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=check.timeout_ms / 1000)
        except asyncio.TimeoutError:
            result = CheckResult(
                healthy=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                timestamp=_iso_now(),
                error=f"Health check timed out after {check.timeout_ms}ms",
            )
        except Exception as e:
            result = CheckResult(
                healthy=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                timestamp=_iso_now(),
                error=describe_error(e),
            )
        else:
            if isinstance(outcome, dict):
                healthy = outcome.get("healthy") is not False
            else:
                healthy = bool(outcome)
            result = CheckResult(
                healthy=healthy,
                duration_ms=int((time.monotonic() - started) * 1000),
                timestamp=_iso_now(),
                data=outcome,
            )

        check.last_result = result
        check.consecutive_failures = 0 if result.healthy else check.consecutive_failures + 1
        return result

    def circuit_breaker_health(self) -> dict[str, Any]:
        if self.breakers is None:
            return {"total": 0, "healthy": 0, "open": 0, "half_open": 0, "details": {}}
        breakers = list(self.breakers)
        return {
            "total": len(breakers),
            "healthy": sum(1 for b in breakers if b.is_healthy),
            "open": sum(1 for b in breakers if b.state == CircuitState.OPEN),
            "half_open": sum(1 for b in breakers if b.state == CircuitState.HALF_OPEN),
            "details": self.breakers.all_stats(),
        }

    async def run_all_checks(self) -> HealthSnapshot:
        results: dict[str, CheckResult] = {}
        critical_issues = []
        for name, check in list(self.checks.items()):
            result = await self._run_single_check(check)
            results[name] = result
            if check.critical and not result.healthy:
                critical_issues.append(
                    {
                        "check": name,
                        "error": result.error,
                        "consecutive_failures": check.consecutive_failures,
                        "description": check.description,
                    }
                )

        snapshot = HealthSnapshot(
            timestamp=_iso_now(),
            results=results,
            overall_healthy=not critical_issues,
            critical_issues=critical_issues,
            circuit_breakers=self.circuit_breaker_health(),
        )
        self.history.append(snapshot)
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]

        if critical_issues:
            self._trigger_alert("critical", snapshot)
        return snapshot

    def _trigger_alert(self, level: str, snapshot: HealthSnapshot) -> None:
        self.logger.error(
            f"🚨 Health alert ({level.upper()}): "
            f"{len(snapshot.critical_issues)} critical issue(s) at {snapshot.timestamp}"
        )
        for callback in list(self._alert_callbacks):
            try:
                callback(level, snapshot)
            except Exception as e:
                self.logger.error(f"Alert callback failed: {describe_error(e)}")

    def get_status(self) -> dict[str, Any]:
        if not self.history:
            return {"status": "unknown", "message": "No health checks run yet"}
        latest = self.history[-1]
        return {
            "status": "healthy" if latest.overall_healthy else "unhealthy",
            "timestamp": latest.timestamp,
            "critical_issues": len(latest.critical_issues),
            "total_checks": len(latest.results),
            "details": latest.results,
        }

    def get_history(self, limit: int = 10) -> list[HealthSnapshot]:
        return self.history[-limit:]

    def get_metrics(self) -> dict[str, Any]:
        """Availability, average check duration and error rate over the last 20 snapshots."""
        if not self.history:
            return {"availability": 0.0, "average_response_time_ms": 0, "error_rate": 100.0}
        recent = self.history[-20:]
        healthy = sum(1 for snapshot in recent if snapshot.overall_healthy)
        availability = healthy / len(recent) * 100
        durations = [r.duration_ms for snapshot in recent for r in snapshot.results.values()]
        average = sum(durations) / len(durations) if durations else 0
        return {
            "availability": round(availability, 2),
            "average_response_time_ms": round(average),
            "error_rate": round(100 - availability, 2),
            "total_checks": len(recent),
            "healthy_checks": healthy,
        }


def watch_session(monitor: HealthMonitor, session: Any, *, name: str | None = None) -> str:
    """
    Register a critical check that round-trips a command on ``session``.

    Returns:
        Name of the registered check
    """
    check_name = name or f"session:{session.id}"
    monitor.add_check(
        check_name,
        session.is_healthy,
        timeout_ms=session.config.health_check_timeout_ms + 1000,
        critical=True,
        description=f"Control channel round-trip for {session.id}",
    )
    return check_name
