"""
Tests for the connection manager: open, heartbeat, crash detection,
reconnection and lifecycle events.
"""

import asyncio
import socket

import pytest

from superpancake import (
    ChannelConnectError,
    ConnectExhausted,
    ConnectionEvent,
    ConnectionState,
    ConnectionTerminated,
    HandshakeTimeout,
    ReconnectExhausted,
    classify_connect_failure,
)
from superpancake.tracing import MemoryTraceSink, Tracer


def record_events(manager) -> list[dict]:
    events: list[dict] = []
    for event in ConnectionEvent:
        manager.add_listener(event, events.append)
    return events


def names(events: list[dict]) -> list[str]:
    return [event["event"] for event in events]


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_attaches_channel(self, make_connection, browser) -> None:
        manager = make_connection()
        await manager.open()

        assert manager.state == ConnectionState.OPEN
        assert manager.is_open
        assert manager.target.id == "page-1"
        assert browser.connect_attempts == 1
        assert manager.is_healthy()
        await manager.close()

    @pytest.mark.asyncio
    async def test_open_retries_failed_connects(self, make_connection, browser) -> None:
        browser.fail_connects = 2
        manager = make_connection()
        await manager.open()

        assert browser.connect_attempts == 3
        assert browser.discover_calls == 3
        assert manager.state == ConnectionState.OPEN
        await manager.close()

    @pytest.mark.asyncio
    async def test_open_exhaustion_is_terminal(self, make_connection, browser) -> None:
        browser.fail_connects = 10
        manager = make_connection(max_connect_attempts=2)
        events = record_events(manager)

        with pytest.raises(ConnectExhausted) as exc_info:
            await manager.open()

        error = exc_info.value
        assert error.attempts == 2
        assert error.port == 9222
        assert isinstance(error.last_error, ChannelConnectError)
        assert "--remote-debugging-port=9222" in str(error.last_error)
        assert manager.state == ConnectionState.CLOSED
        assert manager.is_terminated
        assert names(events) == ["connection-exhausted"]
        assert events[0]["attempts"] == 2
        assert "ChannelConnectError" in events[0]["last_error"]

        with pytest.raises(ConnectionTerminated):
            await manager.open()
        assert names(events) == ["connection-exhausted"]

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, make_connection) -> None:
        async def hanging_connector(url, config):
            await asyncio.sleep(10)

        manager = make_connection(max_connect_attempts=1, handshake_timeout_ms=20)
        manager._connector = hanging_connector

        with pytest.raises(ConnectExhausted) as exc_info:
            await manager.open()
        assert isinstance(exc_info.value.last_error, HandshakeTimeout)
        assert "timed out after 20ms" in str(exc_info.value.last_error)

    @pytest.mark.asyncio
    async def test_open_with_explicit_target_skips_discovery(
        self, make_connection, browser
    ) -> None:
        manager = make_connection()
        await manager.open(browser.target)
        assert browser.discover_calls == 0
        assert manager.is_open
        await manager.close()


class TestClassifyConnectFailure:
    def test_refused(self) -> None:
        error = classify_connect_failure(ConnectionRefusedError(), "ws://x", 9222)
        assert isinstance(error, ChannelConnectError)
        assert "refused" in str(error)
        assert "--remote-debugging-port=9222" in str(error)

    def test_reset(self) -> None:
        error = classify_connect_failure(ConnectionResetError(), "ws://x", 9222)
        assert "reset" in str(error)

    def test_host_not_found(self) -> None:
        error = classify_connect_failure(socket.gaierror(-2, "Name unknown"), "ws://nohost", 9222)
        assert "host not found" in str(error)

    def test_unknown_error_message_is_never_empty(self) -> None:
        error = classify_connect_failure(RuntimeError(), "ws://x", 9222)
        assert str(error)
        assert "RuntimeError" in str(error)


class TestRequestIds:
    @pytest.mark.asyncio
    async def test_ids_increase_across_reconnection(self, make_connection, browser, wait_until):
        manager = make_connection()
        await manager.open()
        first = [manager.next_request_id() for _ in range(3)]

        browser.channel.drop(1006)
        await wait_until(
            lambda: manager.state == ConnectionState.OPEN and len(browser.channels) == 2
        )
        second = [manager.next_request_id() for _ in range(3)]

        assert first == [1, 2, 3]
        assert second == [4, 5, 6]
        await manager.close()

    def test_managers_do_not_share_counters(self, make_connection) -> None:
        one, two = make_connection(), make_connection()
        assert one.next_request_id() == 1
        assert two.next_request_id() == 1


class TestClosure:
    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects(self, make_connection, browser, wait_until):
        manager = make_connection()
        await manager.open()
        events = record_events(manager)

        browser.channel.drop(1006, "gone")
        await wait_until(lambda: "connection-reconnected" in names(events))

        assert names(events) == ["connection-closed", "connection-reconnected"]
        assert events[0]["code"] == 1006
        assert events[0]["reconnectable"] is True
        assert events[1]["attempts"] == 1
        assert manager.state == ConnectionState.OPEN
        assert manager.total_reconnects == 1
        assert manager.reconnect_attempts == 0
        assert len(browser.channels) == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_normal_remote_close_is_terminal(self, make_connection, browser, wait_until):
        manager = make_connection()
        await manager.open()
        events = record_events(manager)

        browser.channel.drop(1000)
        await wait_until(lambda: manager.state == ConnectionState.CLOSED)
        await asyncio.sleep(0.02)

        assert names(events) == ["connection-closed"]
        assert events[0]["reconnectable"] is False
        assert manager.is_terminated
        assert len(browser.channels) == 1

    @pytest.mark.asyncio
    async def test_explicit_close_does_not_reconnect(self, make_connection, browser) -> None:
        manager = make_connection()
        await manager.open()
        events = record_events(manager)
        channel = browser.channel

        await manager.close()
        await asyncio.sleep(0.02)

        assert channel.closed
        assert manager.state == ConnectionState.CLOSED
        assert names(events) == ["connection-closed"]
        assert events[0]["reconnectable"] is False
        assert len(browser.channels) == 1
        with pytest.raises(ConnectionTerminated):
            await manager.open()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_connection) -> None:
        manager = make_connection()
        await manager.open()
        events = record_events(manager)
        await manager.close()
        await manager.close()
        assert names(events) == ["connection-closed"]

    @pytest.mark.asyncio
    async def test_auto_reconnect_disabled(self, make_connection, browser, wait_until):
        manager = make_connection(auto_reconnect=False)
        await manager.open()

        browser.channel.drop(1006)
        await wait_until(lambda: manager.is_terminated)
        assert manager.state == ConnectionState.CLOSED
        assert len(browser.channels) == 1


class TestReconnection:
    @pytest.mark.asyncio
    async def test_retries_with_backoff_until_success(self, make_connection, browser, wait_until):
        manager = make_connection()
        await manager.open()
        events = record_events(manager)

        browser.fail_connects = 2
        browser.channel.drop(1011)
        await wait_until(lambda: "connection-reconnected" in names(events))

        reconnected = events[-1]
        assert reconnected["attempts"] == 3
        assert browser.discover_calls == 4  # open + 3 reconnection attempts
        assert manager.reconnect_attempts == 0
        await manager.close()

    @pytest.mark.asyncio
    async def test_exhaustion_emits_once(self, make_connection, browser, wait_until):
        manager = make_connection(max_reconnect_attempts=2)
        await manager.open()
        events = record_events(manager)

        browser.fail_connects = 100
        browser.channel.drop(1006)
        await wait_until(lambda: manager.is_terminated)
        await asyncio.sleep(0.02)

        assert names(events) == ["connection-closed", "connection-exhausted"]
        assert events[1]["attempts"] == 2
        assert "refused" in events[1]["last_error"]
        assert manager.state == ConnectionState.CLOSED
        assert isinstance(manager.terminal_error, ReconnectExhausted)
        assert browser.connect_attempts == 3

    def test_delay_doubles_and_caps(self, make_connection) -> None:
        manager = make_connection(reconnect_base_delay_ms=1000, reconnect_max_delay_ms=16000)
        delays = [manager.reconnect_delay_ms(n) for n in range(1, 7)]
        assert delays == [1000, 2000, 4000, 8000, 16000, 16000]

    @pytest.mark.asyncio
    async def test_single_reconnection_in_flight(self, make_connection, browser, wait_until):
        manager = make_connection(reconnect_base_delay_ms=30, reconnect_max_delay_ms=30)
        await manager.open()

        browser.channel.drop(1006)
        await wait_until(lambda: manager.is_reconnecting)
        task = manager._reconnect_task
        manager._schedule_reconnect("second trigger")

        assert manager._reconnect_task is task
        await wait_until(lambda: manager.state == ConnectionState.OPEN)
        assert len(browser.channels) == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_reconnection(
        self, make_connection, browser, wait_until, logger
    ):
        manager = make_connection()
        await manager.open()

        def broken(event):
            raise RuntimeError("listener bug")

        manager.add_listener(ConnectionEvent.CLOSED, broken)
        browser.channel.drop(1006)
        await wait_until(lambda: manager.total_reconnects == 1)

        assert any("listener bug" in message for message in logger.errors)
        await manager.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_connection, browser, wait_until) -> None:
        manager = make_connection()
        await manager.open()
        seen = []
        unsubscribe = manager.add_listener("connection-reconnected", seen.append)
        unsubscribe()

        browser.channel.drop(1006)
        await wait_until(lambda: manager.total_reconnects == 1)
        assert seen == []
        await manager.close()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_answered_pings_keep_connection_open(self, make_connection, browser):
        manager = make_connection(heartbeat_interval_ms=10)
        await manager.open()
        await asyncio.sleep(0.08)

        assert browser.channel.pings >= 3
        assert manager.state == ConnectionState.OPEN
        assert manager.health.consecutive_failures == 0
        assert manager.health.last_heartbeat_sent is not None
        await manager.close()

    @pytest.mark.asyncio
    async def test_missed_pings_degrade_then_recover(self, make_connection, browser, wait_until):
        manager = make_connection(heartbeat_interval_ms=10, reconnect_on_degraded=False)
        await manager.open()
        events = record_events(manager)
        browser.channel.answer_pings = False

        await wait_until(lambda: manager.state == ConnectionState.DEGRADED)
        assert names(events) == ["connection-unhealthy"]
        assert events[0]["consecutive_failures"] == 3
        assert not manager.is_healthy()

        browser.channel.answer_pings = True
        await wait_until(lambda: manager.state == ConnectionState.OPEN)
        assert manager.health.consecutive_failures == 0
        assert names(events) == ["connection-unhealthy"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_stale_pong_degrades_before_miss_count(
        self, make_connection, browser, wait_until
    ) -> None:
        manager = make_connection(
            heartbeat_interval_ms=10,
            max_missed_heartbeats=100,
            heartbeat_stale_after_ms=25,
            reconnect_on_degraded=False,
        )
        await manager.open()
        await wait_until(lambda: manager.health.last_heartbeat_ack is not None)
        events = record_events(manager)
        browser.channel.answer_pings = False

        await wait_until(lambda: manager.state == ConnectionState.DEGRADED)

        assert names(events) == ["connection-unhealthy"]
        event = events[0]
        assert event["consecutive_failures"] < 100
        assert event["last_ack_age_ms"] > 25
        assert f"last pong {event['last_ack_age_ms']}ms ago" in event["reason"]
        assert "exceeds 25ms" in event["reason"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_missed_pings_keep_the_interval(self, make_connection, browser) -> None:
        manager = make_connection(
            heartbeat_interval_ms=30,
            max_missed_heartbeats=100,
            heartbeat_stale_after_ms=60000,
            reconnect_on_degraded=False,
        )
        await manager.open()
        browser.channel.answer_pings = False
        await asyncio.sleep(0.3)

        # One ping per interval, not one per interval plus the pong wait
        assert browser.channel.pings >= 7
        assert manager.state == ConnectionState.OPEN
        await manager.close()

    @pytest.mark.asyncio
    async def test_degraded_channel_is_replaced(self, make_connection, browser, wait_until):
        manager = make_connection(heartbeat_interval_ms=10)
        await manager.open()
        events = record_events(manager)
        first = browser.channel
        first.answer_pings = False

        await wait_until(lambda: "connection-reconnected" in names(events))

        assert names(events) == [
            "connection-unhealthy",
            "connection-closed",
            "connection-reconnected",
        ]
        assert first.closed
        assert browser.channel is not first
        assert manager.state == ConnectionState.OPEN
        await manager.close()


class TestCrashDetection:
    @pytest.mark.asyncio
    async def test_dead_browser_triggers_reconnect(self, make_connection, browser, wait_until):
        manager = make_connection(crash_check_interval_ms=10)
        await manager.open()
        events = record_events(manager)

        browser.alive = False

        def revive(event):
            browser.alive = True

        manager.add_listener(ConnectionEvent.CRASHED, revive)
        await wait_until(lambda: "connection-reconnected" in names(events))

        assert names(events)[:2] == ["browser-crashed", "connection-closed"]
        assert events[0]["crash_count"] == 1
        assert manager.crash_count == 1
        assert len(browser.channels) == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_alive_browser_is_left_alone(self, make_connection, browser) -> None:
        manager = make_connection(crash_check_interval_ms=10)
        await manager.open()
        await asyncio.sleep(0.05)
        assert manager.crash_count == 0
        assert len(browser.channels) == 1
        await manager.close()


class TestInbound:
    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self, make_connection, browser, wait_until, logger):
        manager = make_connection()
        received = []
        manager.set_message_handler(received.append)
        await manager.open()

        browser.channel.push_raw("{not json")
        browser.channel.push({"method": "Page.loadEventFired", "params": {}})
        await wait_until(lambda: len(received) == 1)

        assert received[0]["method"] == "Page.loadEventFired"
        assert any("malformed" in message for message in logger.warnings)
        await manager.close()


class TestTracing:
    @pytest.mark.asyncio
    async def test_state_changes_are_traced(self, make_connection, browser, wait_until):
        sink = MemoryTraceSink()
        manager = make_connection()
        manager.tracer = Tracer(run_id="run-1", sink=sink)
        await manager.open()
        browser.channel.drop(1006)
        await wait_until(lambda: manager.total_reconnects == 1)
        await manager.close()

        transitions = [(e["data"]["from"], e["data"]["to"]) for e in sink.of_type("state_change")]
        assert transitions == [
            ("closed", "connecting"),
            ("connecting", "open"),
            ("open", "reconnecting"),
            ("reconnecting", "open"),
            ("open", "closed"),
        ]
        lifecycle = [e["data"]["event"] for e in sink.of_type("lifecycle")]
        assert lifecycle == ["connection-closed", "connection-reconnected", "connection-closed"]
        assert [e["seq"] for e in sink.events] == list(range(1, len(sink.events) + 1))
