"""Tests for the connection manager: backoff schedule, reconnect gating, fatal exit."""

from __future__ import annotations

import asyncio

import pytest

from flash_bot.config import NetworkSettings
from flash_bot.connection import ConnectionManager, ConnectionState, ReconnectPolicy
from flash_bot.errors import ExhaustedRetries, TransportError


class FakeHandle:
    def __init__(self, chain_id: int = 1, name: str = "h") -> None:
        self.name = name
        self._chain_id = chain_id
        self.is_valid = True
        self.closed = False
        self.on_close = None

    async def chain_id(self) -> int:
        return self._chain_id

    async def gas_price(self) -> int:
        return 0

    def invalidate(self) -> None:
        self.is_valid = False

    async def close(self) -> None:
        self.is_valid = False
        self.closed = True


class ScriptedConnector:
    """Hands out the scripted outcomes in order: a FakeHandle or an exception."""

    def __init__(self, outcomes: list[object]) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, url: str, request_timeout: float, on_close) -> FakeHandle:
        self.calls += 1
        outcome = self._outcomes.pop(0) if self._outcomes else TransportError("unreachable")
        if isinstance(outcome, Exception):
            raise outcome
        outcome.on_close = on_close
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


NETWORK = NetworkSettings(chain_id=1, wss_url="wss://node.example")


def _manager(outcomes: list[object], sleep=None) -> tuple[ConnectionManager, ScriptedConnector]:
    connector = ScriptedConnector(outcomes)
    manager = ConnectionManager(
        NETWORK,
        policy=ReconnectPolicy(),
        connector=connector,
        sleep=sleep or RecordingSleep(),
    )
    return manager, connector


# ---------------------------------------------------------------------------
# ReconnectPolicy
# ---------------------------------------------------------------------------


class TestReconnectPolicy:
    def test_default_schedule(self) -> None:
        policy = ReconnectPolicy()
        delays = [policy.delay_ms(n) for n in range(1, 11)]
        assert delays == [5000, 10000, 20000, 40000, 60000, 60000, 60000, 60000, 60000, 60000]

    def test_delay_never_exceeds_cap(self) -> None:
        policy = ReconnectPolicy(base_delay_ms=100, multiplier=3, cap_delay_ms=1000)
        assert all(policy.delay_ms(n) <= 1000 for n in range(1, 30))

    def test_attempt_numbering_starts_at_one(self) -> None:
        with pytest.raises(ValueError):
            ReconnectPolicy().delay_ms(0)

    def test_exhausted_at_max_attempts(self) -> None:
        policy = ReconnectPolicy(max_attempts=10)
        assert policy.exhausted(9) is False
        assert policy.exhausted(10) is True


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


class TestConnect:
    def test_connect_sets_connected(self) -> None:
        async def scenario() -> None:
            handle = FakeHandle()
            manager, _ = _manager([handle])
            assert await manager.connect() is handle
            assert manager.state is ConnectionState.CONNECTED
            assert manager.handle is handle
            assert manager.attempts == 0

        asyncio.run(scenario())

    def test_chain_mismatch_is_transport_error(self) -> None:
        async def scenario() -> None:
            handle = FakeHandle(chain_id=137)
            manager, _ = _manager([handle])
            with pytest.raises(TransportError, match="chain 137"):
                await manager.connect()
            assert handle.closed is True
            assert manager.handle is None
            assert manager.state is ConnectionState.DISCONNECTED

        asyncio.run(scenario())

    def test_reconnect_invalidates_previous_handle(self) -> None:
        async def scenario() -> None:
            first, second = FakeHandle(name="first"), FakeHandle(name="second")
            manager, _ = _manager([first, second])
            await manager.connect()
            await manager.connect()
            assert first.is_valid is False
            assert manager.handle is second

        asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Reconnect sequence
# ---------------------------------------------------------------------------


class TestReconnect:
    def test_gives_up_after_max_attempts(self) -> None:
        async def scenario() -> tuple[ConnectionManager, ScriptedConnector, RecordingSleep]:
            sleep = RecordingSleep()
            manager, connector = _manager([], sleep=sleep)
            manager.on_disconnect(1006)
            with pytest.raises(ExhaustedRetries) as info:
                await manager.wait_fatal()
            assert info.value.attempts == 10
            return manager, connector, sleep

        manager, connector, sleep = asyncio.run(scenario())
        assert connector.calls == 10
        assert sleep.delays == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0, 60.0, 60.0, 60.0, 60.0]
        assert manager.state is ConnectionState.FATAL

    def test_fatal_manager_refuses_to_connect(self) -> None:
        async def scenario() -> None:
            manager, _ = _manager([])
            manager.on_disconnect(1006)
            with pytest.raises(ExhaustedRetries):
                await manager.wait_fatal()
            with pytest.raises(ExhaustedRetries):
                await manager.connect()
            # Further disconnects are ignored once fatal.
            manager.on_disconnect(1006)
            assert manager.reconnect_in_flight is False

        asyncio.run(scenario())

    def test_success_resets_attempts_and_notifies(self) -> None:
        async def scenario() -> None:
            handle = FakeHandle()
            sleep = RecordingSleep()
            manager, _ = _manager([TransportError("down"), TransportError("down"), handle], sleep=sleep)
            seen: list[object] = []
            manager.on_reconnected(seen.append)

            manager.on_disconnect(1006)
            await manager._reconnect_task

            assert seen == [handle]
            assert manager.attempts == 0
            assert manager.state is ConnectionState.CONNECTED
            assert sleep.delays == [5.0, 10.0, 20.0]

        asyncio.run(scenario())

    def test_async_listener_is_awaited_and_failures_contained(self) -> None:
        async def scenario() -> None:
            manager, _ = _manager([FakeHandle()])
            seen: list[object] = []

            def broken(handle: object) -> None:
                raise RuntimeError("listener bug")

            async def refresh(handle: object) -> None:
                seen.append(handle)

            manager.on_reconnected(broken)
            manager.on_reconnected(refresh)
            manager.on_disconnect(1006)
            await manager._reconnect_task
            assert len(seen) == 1

        asyncio.run(scenario())

    def test_unsubscribe_stops_notifications(self) -> None:
        async def scenario() -> None:
            manager, _ = _manager([FakeHandle()])
            seen: list[object] = []
            unsubscribe = manager.on_reconnected(seen.append)
            unsubscribe()
            manager.on_disconnect(1006)
            await manager._reconnect_task
            assert seen == []

        asyncio.run(scenario())

    def test_only_one_reconnect_in_flight(self) -> None:
        async def scenario() -> None:
            gate = asyncio.Event()

            async def held_sleep(seconds: float) -> None:
                await gate.wait()

            manager, connector = _manager([FakeHandle()], sleep=held_sleep)
            manager.on_disconnect(1006)
            manager.on_disconnect(1006)
            manager.on_disconnect(1000)
            assert manager.reconnect_in_flight is True
            gate.set()
            await manager._reconnect_task
            assert connector.calls == 1
            assert manager.attempts == 0

        asyncio.run(scenario())

    def test_close_from_live_handle_triggers_reconnect(self) -> None:
        async def scenario() -> None:
            first, second = FakeHandle(name="first"), FakeHandle(name="second")
            manager, _ = _manager([first, second])
            await manager.connect()
            first.on_close(first, 1006)
            assert manager.state is ConnectionState.RECONNECTING
            await manager._reconnect_task
            assert manager.handle is second

        asyncio.run(scenario())

    def test_close_from_stale_handle_is_ignored(self) -> None:
        async def scenario() -> None:
            first, second = FakeHandle(name="first"), FakeHandle(name="second")
            manager, _ = _manager([first, second])
            await manager.connect()
            await manager.connect()
            first.on_close(first, 1006)
            assert manager.reconnect_in_flight is False
            assert manager.state is ConnectionState.CONNECTED

        asyncio.run(scenario())

    def test_close_cancels_reconnect(self) -> None:
        async def scenario() -> None:
            gate = asyncio.Event()

            async def held_sleep(seconds: float) -> None:
                await gate.wait()

            manager, connector = _manager([FakeHandle()], sleep=held_sleep)
            manager.on_disconnect(1006)
            await asyncio.sleep(0)
            await manager.close()
            await asyncio.sleep(0)
            assert manager.reconnect_in_flight is False
            assert connector.calls == 0
            assert manager.state is ConnectionState.DISCONNECTED

        asyncio.run(scenario())

    def test_handle_lost_during_refresh_reconnects_again(self) -> None:
        async def scenario() -> None:
            first, second, third = FakeHandle(name="first"), FakeHandle(name="second"), FakeHandle(name="third")
            manager, connector = _manager([first, second, third])
            await manager.connect()
            seen: list[FakeHandle] = []

            def refresh(handle: FakeHandle) -> None:
                seen.append(handle)
                if handle is second:
                    # Dies mid-refresh, the way ChainConnection reports a close.
                    handle.is_valid = False
                    handle.on_close(handle, 1006)

            manager.on_reconnected(refresh)
            first.on_close(first, 1006)
            await manager._reconnect_task

            assert seen == [second, third]
            assert connector.calls == 3
            assert manager.handle is third
            assert manager.state is ConnectionState.CONNECTED

        asyncio.run(scenario())


class TestClose:
    def test_close_waits_for_retired_handles(self) -> None:
        async def scenario() -> FakeHandle:
            first, second = FakeHandle(name="first"), FakeHandle(name="second")
            manager, _ = _manager([first, second])
            await manager.connect()
            await manager.connect()
            await manager.close()
            return first

        assert asyncio.run(scenario()).closed is True
